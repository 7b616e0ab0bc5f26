"""
Merged line stream for a child's stdout and stderr.

This module provides PipeReaderThread, a dedicated thread that drains one
pipe through a LossyLines decoder, and MergedLines, which fans the two
reader threads into a single bounded queue. Whichever pipe produces a line
first is delivered first; order within one pipe is preserved.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import BinaryIO, Dict, Optional, Tuple, Union

from droidtail.errors import StreamReadError
from droidtail.stream.lossy_lines import NOT_READY, LossyLines, _Sentinel

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 1024

# Interval at which a reader blocked on a full queue re-checks for shutdown
_PUT_RETRY_SEC = 0.1


class _EndOfStream:
    """Queue marker pushed by a reader when its pipe reaches end of input."""

    def __init__(self, stream: str) -> None:
        self.stream = stream


class PipeReaderThread(threading.Thread):
    """
    Dedicated thread that continuously drains one child pipe.

    Each decoded line is put on the shared queue as (stream, line). End of
    input puts an end marker; an I/O error puts the exception itself so the
    consumer can re-raise it.

    Attributes:
        stream: Name of the pipe ("stdout" or "stderr")
        pipe: Byte pipe to read from
        out: Shared queue of merged items
        shutdown_event: Event to signal thread shutdown
    """

    def __init__(
        self,
        stream: str,
        pipe: BinaryIO,
        out: "queue.Queue",
        shutdown_event: threading.Event,
    ) -> None:
        super().__init__(name=f"PipeReader-{stream}", daemon=True)
        self.stream = stream
        self.pipe = pipe
        self.out = out
        self.shutdown_event = shutdown_event
        self.lines_read = 0

    def run(self) -> None:
        logger.debug(f"[MERGE] {self.stream} reader started")
        try:
            for line in LossyLines(self.pipe):
                if not self._put((self.stream, line)):
                    return
                self.lines_read += 1
        except (OSError, ValueError) as e:
            if self.shutdown_event.is_set():
                # Pipe closed underneath us by close()
                logger.debug(f"[MERGE] {self.stream} reader closed during shutdown: {e}")
                return
            logger.warning(f"[MERGE] Read error on {self.stream}: {e}")
            error = StreamReadError(self.stream, e)
            error.__cause__ = e
            self._put(error)
            return
        self._put(_EndOfStream(self.stream))
        logger.debug(f"[MERGE] {self.stream} reached EOF after {self.lines_read} lines")

    def _put(self, item: object) -> bool:
        """Put an item, waiting while the queue is full. False on shutdown."""
        while not self.shutdown_event.is_set():
            try:
                self.out.put(item, timeout=_PUT_RETRY_SEC)
                return True
            except queue.Full:
                continue
        return False

    def stop(self, timeout: float = 1.0) -> None:
        """
        Stop the reader thread.

        Args:
            timeout: Maximum time to wait for the thread to exit
        """
        self.shutdown_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning(f"[MERGE] {self.stream} reader did not stop within timeout")


class MergedLines:
    """
    Single sequence of lines merged from several pipes.

    Owns one PipeReaderThread per pipe. The sequence is exhausted once every
    pipe has reported end of input.
    """

    def __init__(
        self,
        pipes: Dict[str, BinaryIO],
        capacity: int = DEFAULT_QUEUE_CAPACITY,
    ) -> None:
        """
        Start one reader thread per pipe.

        Args:
            pipes: Mapping of stream name to byte pipe, e.g. {"stdout": p.stdout}
            capacity: Maximum number of undelivered lines held in memory
        """
        if capacity <= 0:
            raise ValueError(f"Invalid queue capacity: {capacity} (must be > 0)")
        self._queue: "queue.Queue" = queue.Queue(maxsize=capacity)
        self._shutdown_event = threading.Event()
        self._pipes = dict(pipes)
        self._open = set(self._pipes)
        self._readers = [
            PipeReaderThread(name, pipe, self._queue, self._shutdown_event)
            for name, pipe in self._pipes.items()
        ]
        for reader in self._readers:
            reader.start()

    @property
    def exhausted(self) -> bool:
        return not self._open

    def poll(
        self, timeout: Optional[float] = 0.0
    ) -> Union[Tuple[str, str], None, _Sentinel]:
        """
        Return the next merged line.

        Args:
            timeout: Seconds to wait for a line; 0 does not wait, None waits
                until a line or end of stream arrives

        Returns:
            (stream, line), None once every pipe is at end of stream, or
            NOT_READY if nothing arrived within the timeout

        Raises:
            StreamReadError: A reader hit an I/O error
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._open:
            try:
                if timeout == 0:
                    item = self._queue.get_nowait()
                elif deadline is None:
                    item = self._queue.get()
                else:
                    # End markers must not restart the caller's wait
                    item = self._queue.get(timeout=max(0.0, deadline - time.monotonic()))
            except queue.Empty:
                return NOT_READY

            if isinstance(item, _EndOfStream):
                self._open.discard(item.stream)
                continue
            if isinstance(item, StreamReadError):
                raise item
            return item
        return None

    def close(self, timeout: float = 1.0) -> None:
        """
        Stop the readers and close the pipes. Safe to call multiple times.

        A pipe is only closed once its reader has exited: closing a buffered
        pipe blocks while another thread is inside readline() on it. A reader
        still blocked after the timeout is left to finish at end of input.
        """
        self._shutdown_event.set()
        for reader in self._readers:
            reader.stop(timeout=timeout)
            if reader.is_alive():
                continue
            try:
                reader.pipe.close()
            except (OSError, ValueError) as e:
                logger.debug(f"[MERGE] Error closing {reader.stream}: {e}")
