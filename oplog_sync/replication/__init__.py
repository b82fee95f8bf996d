"""
Oplog replication engine: log reader, filter, applier, checkpoints.
"""

from .applier import Applier
from .checkpoint_store import CheckpointStore, FileCheckpointStore, SQLCheckpointStore
from .engine import EngineConfig, ReplicationEngine, resolve_start
from ..errors import (
    CheckpointError,
    CheckpointReadError,
    CheckpointWriteError,
    NoNamespacesError,
    QueryError,
    ReplicationError,
    ServerRejected,
    StoreConnectionError,
    TransportError,
)
from .filters import OperationFilter
from .log_reader import IDLE, LogReader
from .metrics import PrometheusObserver, ReplicationObserver
from .models import ApplyResult, EngineState, LogEntry, OperationType, ReplicationStats

__all__ = [
    "Applier",
    "ApplyResult",
    "CheckpointError",
    "CheckpointReadError",
    "CheckpointStore",
    "CheckpointWriteError",
    "EngineConfig",
    "EngineState",
    "FileCheckpointStore",
    "IDLE",
    "LogEntry",
    "LogReader",
    "NoNamespacesError",
    "OperationFilter",
    "OperationType",
    "PrometheusObserver",
    "QueryError",
    "ReplicationEngine",
    "ReplicationError",
    "ReplicationObserver",
    "ReplicationStats",
    "ServerRejected",
    "SQLCheckpointStore",
    "StoreConnectionError",
    "TransportError",
    "resolve_start",
]
