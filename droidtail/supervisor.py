"""
Process stream supervisor.

This module provides StreamSupervisor, which owns a device log command,
merges its stdout and stderr into a single sequence of Records, applies an
optional head limit, and relaunches the command whenever it exits while
restart is enabled.

The child is started in its own session. Every way out of a supervisor's
lifetime (close(), leaving a with block, reaching DONE or FAILED) terminates
the child's whole process group, so no log source is left running in the
background.
"""

from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Callable, List, Optional, Tuple, Union

from droidtail.errors import (
    RestartLimitError,
    SpawnError,
    StreamReadError,
    SupervisorFailedError,
)
from droidtail.record import Record
from droidtail.stream.lossy_lines import NOT_READY, _Sentinel
from droidtail.stream.merge import DEFAULT_QUEUE_CAPACITY, MergedLines

logger = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    """Supervisor state enumeration."""
    RUNNING = 1
    RESPAWNING = 2
    DRAINING = 3
    DONE = 4
    FAILED = 5


# Returned by poll() once the sequence has ended
EXHAUSTED = _Sentinel("EXHAUSTED")

DEFAULT_RESTART_BACKOFF_MS = [250, 500, 1000, 2000, 5000]
DEFAULT_MIN_UPTIME_MS = 1000
DEFAULT_TERMINATE_GRACE_SEC = 2.0


def _print_restart_notice(command: str) -> None:
    print(f'Restarting "{command}"', file=sys.stderr, flush=True)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class StreamSupervisor:
    """
    Supervisor for a line-producing child process.

    The caller pulls values with poll() (non-blocking by default) or by
    iterating. Values are:
    - Record: one line from stdout or stderr
    - None: the command exited and restart is disabled (delivered once)
    - EXHAUSTED: the sequence is over (poll() only; iteration stops)
    - NOT_READY: nothing available within the timeout (poll() only)

    Clean exits restart the command (when enabled). I/O errors do not: they
    move the supervisor to FAILED and are raised to the caller.

    A supervisor is meant to be driven by a single consumer thread.
    """

    def __init__(
        self,
        command: str,
        restart: bool = False,
        head: Optional[int] = None,
        restart_backoff_ms: Optional[List[int]] = None,
        min_uptime_ms: int = DEFAULT_MIN_UPTIME_MS,
        max_restarts: Optional[int] = None,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        terminate_grace_sec: float = DEFAULT_TERMINATE_GRACE_SEC,
        on_restart: Optional[Callable[[str], None]] = None,
    ) -> None:
        """
        Launch the command.

        Args:
            command: Fully resolved command line, split on whitespace
            restart: Relaunch the command whenever its output ends
            head: Maximum number of records to deliver across all restarts
            restart_backoff_ms: Delays applied to consecutive quick exits
                (default: [250, 500, 1000, 2000, 5000], last entry repeats)
            min_uptime_ms: A run shorter than this counts as a quick exit
            max_restarts: Fail after this many restarts (default: unlimited)
            queue_capacity: Maximum undelivered lines buffered per run
            terminate_grace_sec: Wait between SIGTERM and SIGKILL
            on_restart: Called with the command before each relaunch
                (default: prints a notice to stderr)

        Raises:
            SpawnError: The command could not be launched
            ValueError: head or a tuning value is out of range
        """
        if head is not None and head < 0:
            raise ValueError(f"Invalid head: {head} (must be >= 0)")
        backoff = list(restart_backoff_ms) if restart_backoff_ms is not None else list(DEFAULT_RESTART_BACKOFF_MS)
        if not backoff or any(d < 0 for d in backoff):
            raise ValueError(f"Invalid restart backoff schedule: {backoff}")
        if max_restarts is not None and max_restarts < 0:
            raise ValueError(f"Invalid max restarts: {max_restarts} (must be >= 0)")
        if queue_capacity <= 0:
            raise ValueError(f"Invalid queue capacity: {queue_capacity} (must be > 0)")

        self._command = command.strip()
        self._restart = restart
        self._head = head
        self._backoff_ms = backoff
        self._min_uptime_ms = min_uptime_ms
        self._max_restarts = max_restarts
        self._queue_capacity = queue_capacity
        self._terminate_grace_sec = terminate_grace_sec
        self._on_restart = on_restart if on_restart is not None else _print_restart_notice

        self._restarts = 0
        self._quick_exits = 0
        self._respawn_at: Optional[float] = None
        self._error: Optional[BaseException] = None

        self._process, self._output = self._spawn()
        self._started_at = time.monotonic()
        self._state = SupervisorState.RUNNING

    @classmethod
    def from_config(
        cls,
        command: str,
        restart: bool,
        head: Optional[int],
        config,
        on_restart: Optional[Callable[[str], None]] = None,
    ) -> "StreamSupervisor":
        """Create a supervisor using the tuning values of a RunnerConfig."""
        return cls(
            command,
            restart=restart,
            head=head,
            restart_backoff_ms=config.restart_backoff_ms,
            min_uptime_ms=config.min_uptime_ms,
            max_restarts=config.max_restarts or None,
            queue_capacity=config.queue_capacity,
            terminate_grace_sec=config.terminate_grace_sec,
            on_restart=on_restart,
        )

    @property
    def command(self) -> str:
        return self._command

    @property
    def restart(self) -> bool:
        return self._restart

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def remaining(self) -> Optional[int]:
        """Records still allowed by the head limit, or None when unlimited."""
        return self._head

    @property
    def restarts(self) -> int:
        return self._restarts

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def _spawn(self) -> Tuple[subprocess.Popen, MergedLines]:
        argv = self._command.split()
        if not argv:
            raise SpawnError("Cannot launch an empty command")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(f"Failed to launch {argv[0]}: {e}") from e

        if process.stdout is None or process.stderr is None:
            missing = "stdout" if process.stdout is None else "stderr"
            self._terminate(process)
            raise SpawnError(f"Failed to get {missing} of {argv[0]}")

        logger.info(f"[SUPERVISOR] Started {argv[0]} PID={process.pid}")
        logger.debug(f"[SUPERVISOR] argv={argv}")
        try:
            output = MergedLines(
                {"stdout": process.stdout, "stderr": process.stderr},
                capacity=self._queue_capacity,
            )
        except Exception as e:
            logger.error(f"[SUPERVISOR] Failed to start readers for PID={process.pid}: {e}")
            self._terminate(process)
            for pipe in (process.stdout, process.stderr):
                try:
                    pipe.close()
                except (OSError, ValueError) as close_error:
                    logger.debug(f"[SUPERVISOR] Error closing pipe: {close_error}")
            raise SpawnError(f"Failed to read output of {argv[0]}: {e}") from e
        return process, output

    def poll(self, timeout: Optional[float] = 0.0) -> Union[Record, None, _Sentinel]:
        """
        Pull the next value.

        Args:
            timeout: Seconds to wait; 0 never waits, None waits until a value
                other than NOT_READY is available

        Returns:
            A Record, None (terminal marker of a non-restarting run),
            EXHAUSTED, or NOT_READY

        Raises:
            StreamReadError: Reading a pipe failed (supervisor is now FAILED)
            SpawnError: A relaunch failed (supervisor is now FAILED)
            RestartLimitError: max_restarts was exceeded
            SupervisorFailedError: The supervisor had already failed

        Note:
            The timeout bounds waiting for output and for a delayed restart.
            Reaping a child whose output has ended is not bounded by it: a
            child that closes its pipes but keeps running is waited on for
            terminate_grace_sec, then terminated, even by poll(timeout=0).
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if self._state is SupervisorState.FAILED:
                raise SupervisorFailedError(f"Supervisor for \"{self._command}\" has failed: {self._error}")
            if self._state is SupervisorState.DONE:
                return EXHAUSTED
            if self._state is SupervisorState.DRAINING:
                self._finish()
                return EXHAUSTED
            if self._head == 0:
                logger.debug("[SUPERVISOR] Head limit reached")
                self._finish()
                return EXHAUSTED

            if self._state is SupervisorState.RESPAWNING:
                if not self._wait_for_respawn(deadline):
                    return NOT_READY
                self._respawn()
                continue

            try:
                item = self._output.poll(timeout=_remaining(deadline))
            except StreamReadError as e:
                logger.error(f"[SUPERVISOR] {e}")
                self._fail(e)
                raise

            if item is NOT_READY:
                return NOT_READY
            if item is None:
                self._on_output_exhausted()
                if self._state is SupervisorState.DRAINING:
                    return None
                continue

            stream, line = item
            if self._head is not None:
                self._head -= 1
            return Record(raw=line, stream=stream)

    def _on_output_exhausted(self) -> None:
        uptime_ms = (time.monotonic() - self._started_at) * 1000.0
        returncode = self._reap()
        logger.info(
            f"[SUPERVISOR] Output of \"{self._command}\" ended after {uptime_ms:.0f}ms "
            f"(exit code {returncode})"
        )

        if not self._restart:
            self._set_state(SupervisorState.DRAINING)
            return

        if self._max_restarts is not None and self._restarts >= self._max_restarts:
            error = RestartLimitError(
                f"\"{self._command}\" exited after {self._restarts} restarts "
                f"(max_restarts={self._max_restarts})"
            )
            logger.error(f"[SUPERVISOR] {error}")
            self._fail(error)
            raise error

        if uptime_ms < self._min_uptime_ms:
            delay_ms = self._backoff_ms[min(self._quick_exits, len(self._backoff_ms) - 1)]
            self._quick_exits += 1
        else:
            delay_ms = 0
            self._quick_exits = 0

        if delay_ms:
            logger.warning(
                f"[SUPERVISOR] \"{self._command}\" exited after {uptime_ms:.0f}ms, "
                f"delaying restart by {delay_ms}ms"
            )
        self._respawn_at = time.monotonic() + delay_ms / 1000.0
        self._set_state(SupervisorState.RESPAWNING)

    def _wait_for_respawn(self, deadline: Optional[float]) -> bool:
        """Sleep until the respawn is due. False if the deadline comes first."""
        wait = self._respawn_at - time.monotonic() if self._respawn_at is not None else 0.0
        if wait <= 0:
            return True
        remaining = _remaining(deadline)
        if remaining is not None and remaining < wait:
            if remaining > 0:
                time.sleep(remaining)
            return False
        time.sleep(wait)
        return True

    def _respawn(self) -> None:
        self._restarts += 1
        logger.info(f"[SUPERVISOR] Restarting \"{self._command}\" (restart #{self._restarts})")
        self._on_restart(self._command)
        try:
            process, output = self._spawn()
        except SpawnError as e:
            logger.error(f"[SUPERVISOR] Restart failed: {e}")
            self._fail(e)
            raise
        # Old pair was already reaped; swap in the fresh one
        self._process, self._output = process, output
        self._started_at = time.monotonic()
        self._respawn_at = None
        self._set_state(SupervisorState.RUNNING)

    def _reap(self) -> Optional[int]:
        """
        Release the current run after its output ended. Returns the exit code.

        Blocks for up to terminate_grace_sec (plus termination) if the child
        keeps running after closing its pipes.
        """
        process, output = self._process, self._output
        self._process, self._output = None, None
        returncode = None
        if process is not None:
            try:
                returncode = process.wait(timeout=self._terminate_grace_sec)
            except subprocess.TimeoutExpired:
                # Pipes closed but process still running
                logger.warning(f"[SUPERVISOR] PID={process.pid} closed its output but did not exit")
                self._terminate(process)
                returncode = process.returncode
        if output is not None:
            output.close()
        return returncode

    def _terminate(self, process: subprocess.Popen) -> None:
        """Terminate the process group of a child: SIGTERM, then SIGKILL after the grace period."""
        if process.poll() is not None:
            logger.debug(f"[SUPERVISOR] PID={process.pid} already exited")
            return

        try:
            pgid = os.getpgid(process.pid)
            logger.info(f"[SUPERVISOR] SIGTERM sent (pid={process.pid}, pgid={pgid})")
            os.killpg(pgid, signal.SIGTERM)
            try:
                process.wait(timeout=self._terminate_grace_sec)
                return
            except subprocess.TimeoutExpired:
                logger.warning(f"[SUPERVISOR] SIGKILL sent (timeout exceeded, pid={process.pid}, pgid={pgid})")
                os.killpg(pgid, signal.SIGKILL)
                process.wait(timeout=1.0)
        except ProcessLookupError:
            logger.debug(f"[SUPERVISOR] PID={process.pid} exited before it could be signalled")
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"[SUPERVISOR] Error terminating PID={process.pid}: {e}")
            if process.poll() is None:
                process.kill()

    def _release(self) -> None:
        process, output = self._process, self._output
        self._process, self._output = None, None
        if process is not None:
            self._terminate(process)
        if output is not None:
            output.close()

    def _set_state(self, new_state: SupervisorState) -> None:
        if new_state is not self._state:
            logger.debug(f"[SUPERVISOR] {self._state.name} -> {new_state.name}")
            self._state = new_state

    def _finish(self) -> None:
        self._set_state(SupervisorState.DONE)
        self._release()

    def _fail(self, error: BaseException) -> None:
        self._error = error
        self._set_state(SupervisorState.FAILED)
        self._release()

    def close(self) -> None:
        """
        Stop supervising and terminate the child.

        Safe to call multiple times and from any state.
        """
        if self._state is not SupervisorState.FAILED:
            self._set_state(SupervisorState.DONE)
        self._release()

    def __enter__(self) -> "StreamSupervisor":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __iter__(self) -> "StreamSupervisor":
        return self

    def __next__(self) -> Optional[Record]:
        item = self.poll(timeout=None)
        if item is EXHAUSTED:
            raise StopIteration
        return item
