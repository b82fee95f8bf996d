"""
BSON to JSON-serializable converter utility.

Used by the JSON log formatter so oplog values can be logged as-is.
"""

from bson import ObjectId, Decimal128
from bson.timestamp import Timestamp
from datetime import datetime
from enum import Enum
import base64
from typing import Any, Mapping


def bson_safe(value: Any) -> Any:
    """
    Recursively convert BSON types to JSON-serializable Python types.

    Handles:
    - ObjectId -> str
    - Timestamp -> {"t": seconds, "i": ordinal}
    - datetime -> ISO string
    - Decimal128 -> str
    - bytes -> base64 string
    - Enum -> its value
    - Nested mappings (dict, SON) and sequences

    Example:
        >>> bson_safe({"ts": Timestamp(100, 2)})
        {'ts': {'t': 100, 'i': 2}}
    """
    if value is None:
        return None

    if isinstance(value, Timestamp):
        return {"t": value.time, "i": value.inc}

    if isinstance(value, ObjectId):
        return str(value)

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, Decimal128):
        return str(value)

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')

    if isinstance(value, Mapping):
        return {str(k): bson_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [bson_safe(v) for v in value]

    return value
