"""
droidtail: follow a device log command as a single stream of lines.

The package provides:
- StreamSupervisor: runs the command, merges stdout/stderr, restarts on exit
- LossyLines: decodes a byte source into lines without failing on bad UTF-8
- Record: one delivered line
"""

from droidtail.errors import (
    AdbNotFoundError,
    DroidtailError,
    RestartLimitError,
    SpawnError,
    StreamReadError,
    SupervisorFailedError,
)
from droidtail.record import Record
from droidtail.stream import NOT_READY, LossyLines, MergedLines
from droidtail.supervisor import EXHAUSTED, StreamSupervisor, SupervisorState

__all__ = [
    "AdbNotFoundError",
    "DroidtailError",
    "RestartLimitError",
    "SpawnError",
    "StreamReadError",
    "SupervisorFailedError",
    "Record",
    "NOT_READY",
    "LossyLines",
    "MergedLines",
    "EXHAUSTED",
    "StreamSupervisor",
    "SupervisorState",
]
