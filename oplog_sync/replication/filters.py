"""
Operation filter applied between the log reader and the applier.
"""

from typing import Iterable, Optional

from .models import LogEntry


class OperationFilter:
    """
    Decide whether an entry is worth applying.

    Drops no-op entries (heartbeats and other housekeeping records) and,
    when ``allowed_databases`` is given, entries outside those databases.
    Stateless; safe to share.
    """

    def __init__(self, allowed_databases: Optional[Iterable[str]] = None):
        self.allowed_databases = frozenset(allowed_databases) if allowed_databases is not None else None

    def keep(self, entry: LogEntry) -> bool:
        if entry.is_noop:
            return False
        if self.allowed_databases is not None and entry.database not in self.allowed_databases:
            return False
        return True

    __call__ = keep
