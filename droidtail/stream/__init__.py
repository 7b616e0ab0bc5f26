"""
Line stream subsystem.

This package provides the building blocks the supervisor wires together:
- LossyLines: decodes a byte source into lines, replacing invalid UTF-8
- MergedLines: fans a child's stdout and stderr into one line sequence
"""

from droidtail.stream.lossy_lines import NOT_READY, LossyLines, decode_lossy, lossy_lines
from droidtail.stream.merge import MergedLines, PipeReaderThread

__all__ = [
    "NOT_READY",
    "LossyLines",
    "decode_lossy",
    "lossy_lines",
    "MergedLines",
    "PipeReaderThread",
]
