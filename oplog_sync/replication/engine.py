"""
Replication engine: ordered, resumable oplog replay from source to destination.

Lifecycle:
1. Resolving: pick the start point from checkpoint and configured "since"
2. CatchingUp: replay entries after the start point (skipped without one)
3. Tailing: follow the oplog until a stop signal is seen at an idle boundary
4. Stopped / Failed

Every entry goes through the same pipeline: filter, apply, checkpoint. One
entry completes before the next is read.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, Optional, Union
import logging
import signal
import threading

from bson.timestamp import Timestamp

from ..errors import CheckpointError, ReplicationError, ServerRejected
from ..mongodb.connection import StoreConnection
from ..utils.logging import CorrelationContext
from .applier import Applier
from .checkpoint_store import CheckpointStore
from .filters import OperationFilter
from .log_reader import IDLE, DEFAULT_IDLE_TIMEOUT, Idle, LogReader
from .metrics import ReplicationObserver
from .models import EngineState, LogEntry, ReplicationStats
from .prefetch import ReadAhead
from .timestamps import coerce, format_timestamp

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[EngineState, FrozenSet[EngineState]] = {
    EngineState.RESOLVING: frozenset({EngineState.CATCHING_UP, EngineState.TAILING, EngineState.FAILED}),
    EngineState.CATCHING_UP: frozenset({EngineState.TAILING, EngineState.FAILED}),
    EngineState.TAILING: frozenset({EngineState.STOPPED, EngineState.FAILED}),
    EngineState.STOPPED: frozenset(),
    EngineState.FAILED: frozenset(),
}


@dataclass
class EngineConfig:
    """Configuration for the replication engine."""
    since: Optional[Union[Timestamp, int]] = None  # Explicit start point; None means log head
    ignore_apply_error: bool = False  # Tolerate destination rejections
    fast_stop: bool = False  # Treat every idle tail timeout as a stop signal
    prefetch_size: int = 0  # Read-ahead capacity; 0 reads inline

    def __post_init__(self):
        """Validate configuration values."""
        self.since = coerce(self.since)
        if self.since is not None and self.since.time == 0 and self.since.inc == 0:
            self.since = None
        if self.prefetch_size < 0:
            raise ValueError("prefetch_size must be non-negative")


def resolve_start(
    checkpoint: Optional[Timestamp],
    since: Optional[Timestamp],
) -> Optional[Timestamp]:
    """
    Start-point precedence.

    The checkpoint wins when it is later than ``since``; otherwise ``since``
    is used. None means skip catch-up and tail from the log head.
    """
    if checkpoint is not None and (since is None or checkpoint > since):
        return checkpoint
    return since


class ReplicationEngine:
    """
    Drive LogReader -> OperationFilter -> Applier -> CheckpointStore.

    Single-threaded: reads, applies and checkpoint writes never overlap, so
    the destination sees entries in source order.

    Thread Safety: only :meth:`stop` may be called from another thread.

    Example:
        >>> engine = ReplicationEngine.from_connections(
        ...     source, destination,
        ...     checkpoint_store=FileCheckpointStore("checkpoint"),
        ...     config=EngineConfig(ignore_apply_error=True)
        ... )
        >>> stats = engine.run()
    """

    def __init__(
        self,
        reader: LogReader,
        applier: Applier,
        checkpoint_store: Optional[CheckpointStore] = None,
        config: Optional[EngineConfig] = None,
        operation_filter: Optional[OperationFilter] = None,
        observer: Optional[ReplicationObserver] = None,
        run_id: Optional[str] = None,
    ):
        self.reader = reader
        self.applier = applier
        self.checkpoint_store = checkpoint_store
        self.config = config or EngineConfig()
        self.operation_filter = operation_filter
        self.observer = observer or ReplicationObserver()
        self.run_id = run_id

        self.state = EngineState.RESOLVING
        self.stats = ReplicationStats()
        self.error: Optional[ReplicationError] = None
        self._stop_event = threading.Event()
        self._position: Optional[Timestamp] = None
        self._consumed = False
        self._started = False

        self._original_sigterm = None
        self._original_sigint = None

    @classmethod
    def from_connections(
        cls,
        source: StoreConnection,
        destination: StoreConnection,
        checkpoint_store: Optional[CheckpointStore] = None,
        config: Optional[EngineConfig] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        batch_size: int = 0,
        observer: Optional[ReplicationObserver] = None,
    ) -> "ReplicationEngine":
        return cls(
            reader=LogReader(source, idle_timeout=idle_timeout, batch_size=batch_size),
            applier=Applier(destination),
            checkpoint_store=checkpoint_store,
            config=config,
            observer=observer,
        )

    def run(self, handle_signals: bool = False) -> ReplicationStats:
        """
        Replicate until stopped (blocking call).

        Args:
            handle_signals: Turn SIGTERM/SIGINT into :meth:`stop`. Only valid
                from the main thread.

        Returns:
            Stats for the run; ``stats.state`` is STOPPED

        Raises:
            ReplicationError: On any fatal error; the engine ends in FAILED
        """
        if self._started:
            raise RuntimeError("ReplicationEngine.run() can only be called once")
        self._started = True

        if handle_signals:
            self._setup_signal_handlers()

        try:
            with CorrelationContext(self.run_id) as run_id:
                self.run_id = run_id
                self._set_state(EngineState.RESOLVING)
                try:
                    self._run()
                except ReplicationError as e:
                    self._fail(e)
                    raise
                except Exception as e:
                    error = ReplicationError(f"Unexpected error: {e}")
                    self._fail(error)
                    raise error from e
        finally:
            if handle_signals:
                self._restore_signal_handlers()

        logger.info("Replication stopped", extra=self.stats.as_dict())
        return self.stats

    def _run(self) -> None:
        databases = self.reader.open()
        if self.operation_filter is None:
            self.operation_filter = OperationFilter(allowed_databases=databases)
        start = resolve_start(self._read_checkpoint(), self.config.since)
        head = self.reader.head()
        logger.info(
            f"Resolved start {format_timestamp(start)}, log head {format_timestamp(head)}",
            extra={"start": format_timestamp(start), "head": format_timestamp(head)}
        )

        if start is not None:
            self._position = start
            self._set_state(EngineState.CATCHING_UP)
            logger.info("Restoring oplog...")
            self._drive(self.reader.catch_up(start))
            logger.info(
                "Catch-up complete",
                extra={"entries_applied": self.stats.entries_applied}
            )

        if self._consumed:
            entries = self.reader.tail(self._position, inclusive=True)
        else:
            switch_point = head if start is None else max(head, start)
            entries = self.reader.tail(switch_point)

        self._set_state(EngineState.TAILING)
        logger.info("Tailing...")
        self._drive(entries)
        self._set_state(EngineState.STOPPED)

    def _drive(self, items: Iterator[Union[LogEntry, Idle]]) -> None:
        """Feed ``items`` through the pipeline until exhausted or stopped."""
        if self.config.prefetch_size:
            items = ReadAhead(items, self.config.prefetch_size)
        try:
            for item in items:
                if item is IDLE:
                    if self.stop_requested:
                        return
                    continue
                self._process(item)
        finally:
            close = getattr(items, "close", None)
            if close is not None:
                close()

    def _process(self, entry: LogEntry) -> None:
        self.stats.entries_read += 1

        if self._position is not None and entry.timestamp <= self._position:
            logger.warning(
                f"Skipping out-of-order entry {entry}",
                extra={"position": format_timestamp(self._position)}
            )
            return
        self._position = entry.timestamp
        self._consumed = True

        if not self.operation_filter.keep(entry):
            self.stats.entries_skipped += 1
            logger.debug(f"skipping {entry}", extra={"namespace": entry.namespace})
            self.observer.on_skipped(entry)
            return

        result = self.applier.apply(entry)
        if result.accepted:
            self.stats.entries_applied += 1
            self.observer.on_applied(entry)
            logger.debug(f"applied {entry}", extra={"entries_applied": self.stats.entries_applied})
        else:
            self.observer.on_rejected(entry, result.reason)
            if not self.config.ignore_apply_error:
                raise ServerRejected(f"Server gave error applying ops: {result.reason}", result.reason)
            self.stats.entries_rejected += 1
            logger.warning(
                f"Ignoring server error response of applying ops: {result.reason}",
                extra={"namespace": entry.namespace, "oplog_ts": format_timestamp(entry.timestamp)}
            )

        self._checkpoint(entry)

    def _checkpoint(self, entry: LogEntry) -> None:
        self.stats.last_timestamp = entry.timestamp
        if self.checkpoint_store is None:
            return
        try:
            self.checkpoint_store.write(entry.timestamp, entries_applied=self.stats.entries_applied)
        except CheckpointError as e:
            self.stats.checkpoint_failures += 1
            self.observer.on_checkpoint_failed(entry, e)
            logger.error(
                f"Timestamp recorder write failed: {e}",
                extra={"oplog_ts": format_timestamp(entry.timestamp)}
            )

    def _read_checkpoint(self) -> Optional[Timestamp]:
        if self.checkpoint_store is None:
            return None
        try:
            recorded = self.checkpoint_store.read()
        except CheckpointError as e:
            logger.warning(f"Read timestamp info from recorder failed: {e}")
            return None

        since = self.config.since
        if recorded is None:
            return None
        if since is None or recorded > since:
            logger.info(
                f"Recorded timestamp ({format_timestamp(recorded)}) is larger than since "
                f"timestamp ({format_timestamp(since)}), so recorded timestamp will be used"
            )
        else:
            logger.info(
                f"Recorded timestamp ({format_timestamp(recorded)}) is not larger than since "
                f"timestamp ({format_timestamp(since)}), so since timestamp will be used"
            )
        return recorded

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set() or self.config.fast_stop

    def stop(self) -> None:
        """Request a clean stop at the next idle tail boundary."""
        logger.info("Stop requested", extra={"state": self.state.value})
        self._stop_event.set()

    def _set_state(self, state: EngineState) -> None:
        if state is not self.state and state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid engine transition {self.state.value} -> {state.value}")
        self.state = state
        self.stats.state = state
        self.observer.on_state_change(state)

    def _fail(self, error: ReplicationError) -> None:
        self.error = error
        if not self.state.is_terminal:
            self._set_state(EngineState.FAILED)
        logger.error(
            f"Replication failed: {error}",
            extra={"error_type": type(error).__name__, **self.stats.as_dict()}
        )

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received shutdown signal {signum}")
            self.stop()

        self._original_sigterm = signal.signal(signal.SIGTERM, signal_handler)
        self._original_sigint = signal.signal(signal.SIGINT, signal_handler)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if self._original_sigterm is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm)
        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
