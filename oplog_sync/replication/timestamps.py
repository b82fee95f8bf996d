"""
Oplog timestamp helpers.

An oplog ``ts`` is a BSON timestamp: a 32-bit seconds component and a 32-bit
ordinal that orders operations within the same second. Checkpoints store the
packed 64-bit form ``(seconds << 32) | ordinal``.
"""

from typing import Optional, Union

from bson.timestamp import Timestamp

_UINT32_MAX = 0xFFFFFFFF


def from_parts(seconds: int, ordinal: int = 0) -> Timestamp:
    """Build a timestamp from seconds since the epoch and an ordinal.

    Raises:
        ValueError: If either component does not fit in 32 bits
    """
    if not 0 <= seconds <= _UINT32_MAX:
        raise ValueError(f"seconds out of range: {seconds}")
    if not 0 <= ordinal <= _UINT32_MAX:
        raise ValueError(f"ordinal out of range: {ordinal}")
    return Timestamp(seconds, ordinal)


def pack(ts: Timestamp) -> int:
    """Pack a timestamp into its 64-bit integer form."""
    return (ts.time << 32) | ts.inc


def unpack(value: int) -> Timestamp:
    """Inverse of :func:`pack`."""
    if value < 0 or value > 0xFFFFFFFFFFFFFFFF:
        raise ValueError(f"packed timestamp out of range: {value}")
    return Timestamp(value >> 32, value & _UINT32_MAX)


def parse(text: str) -> Timestamp:
    """Parse the decimal text written by a checkpoint store."""
    return unpack(int(text.strip(), 10))


def coerce(value: Union[Timestamp, int, None]) -> Optional[Timestamp]:
    if value is None or isinstance(value, Timestamp):
        return value
    return unpack(value)


def format_timestamp(ts: Optional[Timestamp]) -> str:
    if ts is None:
        return "none"
    return f"{ts.time}:{ts.inc}"
