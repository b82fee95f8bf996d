"""
Ordered reads from the source operation log.

Two modes:
1. catch_up: finite read of every entry after a resume point
2. tail: endless read on a tailable-await cursor, yielding IDLE whenever the
   idle timeout passes without new data

Both modes yield entries with strictly increasing timestamps.
"""

from typing import Any, Callable, Dict, Iterator, List, Optional, Union
import logging
import time

from bson.timestamp import Timestamp
from pymongo.errors import PyMongoError

from ..errors import NoNamespacesError, QueryError, TransportError
from ..mongodb.connection import StoreConnection, namespace_patterns
from .models import LogEntry
from .timestamps import format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 1.0


class Idle:
    """Marker yielded by :meth:`LogReader.tail` at each idle-timeout boundary."""

    def __repr__(self) -> str:
        return "IDLE"


IDLE = Idle()


class LogReader:
    """
    Reader over ``local.oplog.rs`` restricted to user databases.

    Call :meth:`open` once before reading; it fixes the namespace filter used
    by every later query.

    Errors are raised, never retried: QueryError for the head lookup and
    catch-up, TransportError while tailing.
    """

    def __init__(
        self,
        source: StoreConnection,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        batch_size: int = 0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        self.source = source
        self.idle_timeout = idle_timeout
        self.batch_size = batch_size
        self._sleep = sleep
        self.databases: Optional[List[str]] = None
        self._ns_filter: Optional[Dict[str, Any]] = None

    def open(self) -> List[str]:
        """
        Resolve the set of databases to replicate.

        Returns:
            Sorted user database names

        Raises:
            NoNamespacesError: If the source has no user databases
            QueryError: If the database list cannot be fetched
        """
        try:
            names = self.source.list_namespaces()
        except PyMongoError as e:
            raise QueryError(f"Listing source databases failed: {e}") from e

        if not names:
            raise NoNamespacesError("No databases found")

        self.databases = sorted(names)
        self._ns_filter = {"$in": namespace_patterns(self.databases)}
        logger.info(
            f"Replicating {len(self.databases)} databases",
            extra={"databases": self.databases}
        )
        return self.databases

    def _query(self, op: str, position: Timestamp) -> Dict[str, Any]:
        if self._ns_filter is None:
            raise RuntimeError("LogReader.open() must be called before reading")
        return {"ts": {op: position}, "ns": self._ns_filter}

    def head(self) -> Timestamp:
        """Timestamp of the newest oplog entry."""
        try:
            docs = list(self.source.find_log({}, sort_descending=True, limit=1))
        except PyMongoError as e:
            raise QueryError(f"Oplog find one failed: {e}") from e
        if not docs:
            raise QueryError("Oplog find one failed: oplog is empty")
        return docs[0]["ts"]

    def catch_up(self, from_ts: Timestamp) -> Iterator[LogEntry]:
        """Yield every entry with ``ts > from_ts`` present when the query runs."""
        query = self._query("$gt", from_ts)
        logger.info(
            f"Restoring oplog after {format_timestamp(from_ts)}",
            extra={"from_timestamp": format_timestamp(from_ts)}
        )
        last = from_ts
        cursor = None
        try:
            cursor = self.source.find_log(query, batch_size=self.batch_size)
            for doc in cursor:
                entry = LogEntry.from_document(doc)
                if entry.timestamp <= last:
                    continue
                last = entry.timestamp
                yield entry
        except PyMongoError as e:
            raise QueryError(f"Catch-up query failed: {e}") from e
        finally:
            if cursor is not None and hasattr(cursor, "close"):
                cursor.close()

    def tail(self, position: Timestamp, inclusive: bool = False) -> Iterator[Union[LogEntry, Idle]]:
        """
        Follow the oplog forever from ``position``.

        Args:
            position: Last consumed timestamp, or the log head
            inclusive: Query with ``$gte`` so the cursor starts on ``position``
                itself; the boundary entry is skipped, not re-yielded

        Yields:
            LogEntry for each new entry, IDLE after every idle timeout
        """
        last = position
        cursor = None
        try:
            while True:
                if cursor is None:
                    op = "$gte" if inclusive else "$gt"
                    logger.debug(
                        f"Opening tail cursor {op} {format_timestamp(last)}",
                        extra={"position": format_timestamp(last)}
                    )
                    cursor = self.source.open_tail(self._query(op, last), self.idle_timeout)

                doc = cursor.next()
                if doc is not None:
                    entry = LogEntry.from_document(doc)
                    if entry.timestamp <= last:
                        continue
                    last = entry.timestamp
                    inclusive = True
                    yield entry
                    continue

                if cursor.timed_out:
                    yield IDLE
                    continue

                # Server closed the cursor (nothing matched yet or it was killed)
                cursor.close()
                cursor = None
                self._sleep(self.idle_timeout)
                yield IDLE
        except PyMongoError as e:
            raise TransportError(f"Error tailing oplog: {e}") from e
        finally:
            if cursor is not None:
                cursor.close()
