"""
Error taxonomy for oplog replication.

Fatal kinds propagate out of ``ReplicationEngine.run``. Checkpoint errors are
raised by the stores but absorbed by the engine.
"""


class ReplicationError(Exception):
    """Base exception for replication errors."""
    pass


class StoreConnectionError(ReplicationError):
    """Could not connect or authenticate to a store."""
    pass


class QueryError(ReplicationError):
    """Log head lookup or catch-up read failed."""
    pass


class TransportError(ReplicationError):
    """Network failure while tailing or applying."""
    pass


class ServerRejected(ReplicationError):
    """Destination processed an apply call but reported failure."""

    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason


class NoNamespacesError(ReplicationError):
    """Source has no user databases to replicate."""
    pass


class CheckpointError(ReplicationError):
    """Error saving/loading checkpoint."""
    pass


class CheckpointReadError(CheckpointError):
    pass


class CheckpointWriteError(CheckpointError):
    pass
