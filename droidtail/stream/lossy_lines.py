"""
Lossy line decoder.

This module provides LossyLines, which turns a byte-oriented readable
source into a lazy sequence of text lines. Invalid UTF-8 never raises:
device log streams occasionally carry binary garbage, so every malformed
byte sequence is replaced with U+FFFD and the line is still delivered.
"""

from __future__ import annotations

import select
import time
from typing import BinaryIO, Iterator, Union

DELIMITER = b"\n"
ENCODING = "utf-8"

# Pause between retries of a not-ready source that select() cannot wait on
_RETRY_SEC = 0.01


class _Sentinel:
    """Named marker value returned in place of a line."""

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


# Returned when a source has no data available yet
NOT_READY = _Sentinel("NOT_READY")


def decode_lossy(data: bytes) -> str:
    """Decode bytes as UTF-8, substituting U+FFFD for invalid sequences."""
    return data.decode(ENCODING, errors="replace")


class LossyLines:
    """
    Lazy sequence of decoded lines read from a byte source.

    The source must expose readline(). A blocking source (a pipe opened by
    subprocess, a BytesIO) is read until a delimiter or end of input. A
    non-blocking source may return None or raise BlockingIOError, in which
    case poll() returns NOT_READY and keeps the bytes read so far.

    The internal buffer only ever holds the unterminated tail of the
    current line. It is cleared each time a line is emitted.

    Attributes:
        io: The underlying byte source
    """

    def __init__(self, io: BinaryIO) -> None:
        self.io = io
        self._buffer = bytearray()
        self._eof = False

    @property
    def buffered(self) -> bytes:
        """Bytes of the current, not yet terminated, line."""
        return bytes(self._buffer)

    def poll(self) -> Union[str, None, _Sentinel]:
        """
        Produce the next line.

        Returns:
            The decoded line without its delimiter, None at end of stream,
            or NOT_READY if the source would block.

        Raises:
            OSError, ValueError: Propagated from the source unchanged
        """
        if self._eof:
            return None

        while True:
            try:
                chunk = self.io.readline()
            except BlockingIOError:
                return NOT_READY
            if chunk is None:
                return NOT_READY

            if not chunk:
                if not self._buffer:
                    self._eof = True
                    return None
                # Source closed mid-line: emit the tail once
                return self._take_line()

            if chunk.endswith(DELIMITER):
                self._buffer.extend(chunk[:-1])
                return self._take_line()

            self._buffer.extend(chunk)

    def _take_line(self) -> str:
        line = decode_lossy(bytes(self._buffer))
        self._buffer.clear()
        return line

    def _wait_readable(self) -> None:
        try:
            select.select([self.io], [], [])
        except (AttributeError, TypeError, ValueError, OSError):
            # Source without a usable fileno: back off before polling again
            time.sleep(_RETRY_SEC)

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        while True:
            line = self.poll()
            if line is None:
                raise StopIteration
            if line is NOT_READY:
                self._wait_readable()
                continue
            return line


def lossy_lines(io: BinaryIO) -> LossyLines:
    """Wrap a byte source in a LossyLines decoder."""
    return LossyLines(io)
