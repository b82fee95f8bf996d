"""
Data model for oplog replication.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from bson.son import SON
from bson.timestamp import Timestamp

from ..errors import QueryError
from .timestamps import format_timestamp


class OperationType(str, Enum):
    """Oplog operation codes."""
    INSERT = "i"
    UPDATE = "u"
    DELETE = "d"
    COMMAND = "c"
    NOOP = "n"


class EngineState(str, Enum):
    """Replication engine lifecycle."""
    RESOLVING = "resolving"
    CATCHING_UP = "catching_up"
    TAILING = "tailing"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EngineState.STOPPED, EngineState.FAILED)


def _as_son(value: Optional[Mapping[str, Any]]) -> Optional[SON]:
    if value is None or isinstance(value, SON):
        return value
    return SON(value.items())


@dataclass(frozen=True)
class LogEntry:
    """
    One record from the source operation log.

    ``payload`` and ``match_criteria`` are kept as ``SON`` so key order
    survives the trip to the destination unchanged.
    """
    timestamp: Timestamp
    operation_type: OperationType
    namespace: str
    payload: SON = field(default_factory=SON)
    match_criteria: Optional[SON] = None
    history_id: Optional[int] = None
    version: int = 2

    @property
    def database(self) -> str:
        return self.namespace.split(".", 1)[0]

    @property
    def is_noop(self) -> bool:
        return self.operation_type is OperationType.NOOP

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "LogEntry":
        """Decode a raw ``local.oplog.rs`` document.

        Raises:
            QueryError: If the document is not a usable oplog entry
        """
        try:
            ts = doc["ts"]
            op = OperationType(doc["op"])
            ns = doc["ns"]
        except KeyError as e:
            raise QueryError(f"Oplog entry missing field {e}") from e
        except ValueError as e:
            raise QueryError(f"Unknown oplog operation {doc.get('op')!r}") from e

        if not isinstance(ts, Timestamp):
            raise QueryError(f"Oplog entry has non-timestamp ts: {ts!r}")

        return cls(
            timestamp=ts,
            operation_type=op,
            namespace=ns,
            payload=_as_son(doc.get("o")) or SON(),
            match_criteria=_as_son(doc.get("o2")),
            history_id=doc.get("h"),
            version=doc.get("v", 2),
        )

    def to_document(self) -> SON:
        """Wire shape forwarded to ``applyOps``."""
        doc = SON()
        doc["ts"] = self.timestamp
        if self.history_id is not None:
            doc["h"] = self.history_id
        doc["v"] = self.version
        doc["op"] = self.operation_type.value
        doc["ns"] = self.namespace
        doc["o"] = self.payload
        if self.match_criteria is not None:
            doc["o2"] = self.match_criteria
        return doc

    def __str__(self) -> str:
        return f"{self.operation_type.name.lower()} {self.namespace} @ {format_timestamp(self.timestamp)}"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a single apply call."""
    accepted: bool
    reason: str = ""

    @classmethod
    def ok(cls) -> "ApplyResult":
        return cls(accepted=True)

    @classmethod
    def rejected(cls, reason: str) -> "ApplyResult":
        return cls(accepted=False, reason=reason)


@dataclass
class ReplicationStats:
    """Counters owned by a single engine run."""
    entries_read: int = 0
    entries_applied: int = 0
    entries_skipped: int = 0
    entries_rejected: int = 0
    checkpoint_failures: int = 0
    last_timestamp: Optional[Timestamp] = None
    state: EngineState = EngineState.RESOLVING

    def as_dict(self) -> dict:
        return {
            "entries_read": self.entries_read,
            "entries_applied": self.entries_applied,
            "entries_skipped": self.entries_skipped,
            "entries_rejected": self.entries_rejected,
            "checkpoint_failures": self.checkpoint_failures,
            "last_timestamp": format_timestamp(self.last_timestamp),
            "state": self.state.value,
        }
