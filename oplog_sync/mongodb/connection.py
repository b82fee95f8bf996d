from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional
import logging
import re

import pymongo
from bson.codec_options import CodecOptions
from bson.son import SON
from pymongo.collection import Collection
from pymongo.cursor import Cursor, CursorType
from pymongo.errors import OperationFailure, PyMongoError

from ..errors import StoreConnectionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300
INTERNAL_DATABASES = frozenset({"admin", "local", "config"})
OPLOG_DATABASE = "local"
OPLOG_COLLECTION = "oplog.rs"


@dataclass(frozen=True)
class ApplyOpsResponse:
    """Server reply to an ``applyOps`` command."""
    ok: bool
    errmsg: str = ""


def _get_client(uri: str, **options: Any) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Looking up ``pymongo.MongoClient`` at call time allows tests to monkeypatch
    it (e.g., with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(uri, **options)


def namespace_patterns(databases: List[str]) -> List[re.Pattern]:
    """Anchored ``ns`` patterns matching every collection of ``databases``."""
    return [re.compile(f"^{re.escape(name)}\\.") for name in sorted(databases)]


class TailCursor:
    """
    Tailable-await cursor over the oplog.

    ``next()`` returns ``None`` instead of blocking forever. After a ``None``
    check ``timed_out`` (the await window passed with no data, cursor still
    usable) and ``alive`` (server closed the cursor, caller must reopen).
    """

    def __init__(self, cursor: Cursor):
        self._cursor = cursor
        self.timed_out = False

    @property
    def alive(self) -> bool:
        return self._cursor.alive

    def next(self) -> Optional[SON]:
        self.timed_out = False
        try:
            return self._cursor.next()
        except StopIteration:
            self.timed_out = self._cursor.alive
            return None

    def close(self) -> None:
        self._cursor.close()


class StoreConnection:
    """
    Handle to one MongoDB deployment.

    Owns the client; the replication engine only calls the operations below.
    """

    def __init__(self, client: pymongo.MongoClient, name: str = "store"):
        self.client = client
        self.name = name

    @classmethod
    def connect(
        cls,
        uri: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls: bool = False,
        tls_allow_invalid_certificates: bool = False,
        timeout: Optional[float] = None,
        auth_mechanism: Optional[str] = None,
        name: str = "store",
    ) -> "StoreConnection":
        """
        Connect and verify the deployment answers a ping.

        Args:
            uri: MongoDB connection URI
            username: Optional user, overrides credentials in the URI
            password: Optional password
            tls: Negotiate TLS
            tls_allow_invalid_certificates: Skip certificate verification
            timeout: Seconds for server selection, connect and socket I/O
            auth_mechanism: e.g. ``SCRAM-SHA-256``
            name: Label used in log records

        Raises:
            StoreConnectionError: On invalid URI, unreachable server or auth failure
        """
        if timeout is None or timeout <= 0:
            timeout = DEFAULT_TIMEOUT_SECONDS
        timeout_ms = int(timeout * 1000)

        options: Dict[str, Any] = {
            "serverSelectionTimeoutMS": timeout_ms,
            "connectTimeoutMS": timeout_ms,
            "socketTimeoutMS": timeout_ms,
        }
        if username:
            options["username"] = username
            options["password"] = password or ""
        if auth_mechanism:
            options["authMechanism"] = auth_mechanism
        if tls:
            options["tls"] = True
            options["tlsAllowInvalidCertificates"] = tls_allow_invalid_certificates

        try:
            client = _get_client(uri, **options)
        except (PyMongoError, ValueError, TypeError) as e:
            raise StoreConnectionError(f"Cannot parse given URI for {name}: {e}") from e

        try:
            client.admin.command("ping")
        except PyMongoError as e:
            client.close()
            raise StoreConnectionError(f"Cannot connect to {name}: {e}") from e

        logger.info(
            f"Connected to {name}",
            extra={"store": name, "tls": tls, "timeout_seconds": timeout}
        )
        return cls(client, name=name)

    @property
    def oplog(self) -> Collection:
        return self.client[OPLOG_DATABASE].get_collection(
            OPLOG_COLLECTION,
            codec_options=CodecOptions(document_class=SON),
        )

    def list_namespaces(self) -> List[str]:
        """User database names, excluding internal/administrative ones."""
        return [
            name for name in self.client.list_database_names()
            if name not in INTERNAL_DATABASES
        ]

    def find_log(
        self,
        query: Mapping[str, Any],
        sort_descending: bool = False,
        limit: int = 0,
        batch_size: int = 0,
    ) -> Iterator[SON]:
        """Finite, natural-order read of the oplog."""
        direction = pymongo.DESCENDING if sort_descending else pymongo.ASCENDING
        cursor = self.oplog.find(query, sort=[("$natural", direction)], limit=limit)
        if batch_size:
            cursor = cursor.batch_size(batch_size)
        return cursor

    def open_tail(self, query: Mapping[str, Any], idle_timeout: float) -> TailCursor:
        cursor = self.oplog.find(query, cursor_type=CursorType.TAILABLE_AWAIT)
        cursor = cursor.max_await_time_ms(int(idle_timeout * 1000))
        return TailCursor(cursor)

    def atomic_apply(self, entries: List[Mapping[str, Any]]) -> ApplyOpsResponse:
        """Apply ``entries`` as one all-or-nothing ``applyOps`` command.

        Command failures reported by the server come back as ``ok=False``;
        network errors propagate as ``PyMongoError``.
        """
        try:
            reply = self.client.admin.command(SON([("applyOps", list(entries))]))
        except OperationFailure as e:
            details = e.details or {}
            return ApplyOpsResponse(ok=False, errmsg=details.get("errmsg", str(e)))
        return ApplyOpsResponse(ok=bool(reply.get("ok")), errmsg=reply.get("errmsg", ""))

    def close(self) -> None:
        self.client.close()
        logger.info(f"Closed connection to {self.name}", extra={"store": self.name})
