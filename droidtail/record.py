from dataclasses import dataclass


@dataclass
class Record:
    """
    A single line of device log output.

    Only the raw text is filled in here. Parsing it into timestamp, level,
    tag and message is left to whoever consumes the record.
    """
    raw: str
    stream: str = "stdout"  # 'stdout' or 'stderr'
