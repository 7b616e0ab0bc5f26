"""
Error types raised by droidtail.

Construction errors (SpawnError) surface from whoever creates a
StreamSupervisor; runtime errors surface from poll()/next().
"""


class DroidtailError(Exception):
    """Base class for droidtail errors."""


class SpawnError(DroidtailError):
    """The command could not be launched or its pipes could not be obtained."""


class AdbNotFoundError(SpawnError):
    """No adb executable could be located."""


class StreamReadError(DroidtailError):
    """An I/O error occurred while reading one of the child's pipes."""

    def __init__(self, stream: str, error: BaseException) -> None:
        super().__init__(f"Error reading {stream}: {error}")
        self.stream = stream


class SupervisorFailedError(DroidtailError):
    """The supervisor is in the FAILED state and produces no further values."""


class RestartLimitError(SupervisorFailedError):
    """The command exited more often than max_restarts allows."""
