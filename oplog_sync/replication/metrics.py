"""
Observability hooks for the replication engine.

The engine reports events to a ReplicationObserver. PrometheusObserver turns
them into prometheus_client metrics held in its own registry.
"""

from typing import Optional
import time

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from .models import EngineState, LogEntry


class ReplicationObserver:
    """No-op base; override the hooks you need."""

    def on_state_change(self, state: EngineState) -> None:
        pass

    def on_applied(self, entry: LogEntry) -> None:
        pass

    def on_skipped(self, entry: LogEntry) -> None:
        pass

    def on_rejected(self, entry: LogEntry, reason: str) -> None:
        pass

    def on_checkpoint_failed(self, entry: LogEntry, error: Exception) -> None:
        pass


class PrometheusObserver(ReplicationObserver):
    """
    Prometheus metrics for one replication run.

    Metrics:
    - oplog_sync_entries_total{operation, outcome}
    - oplog_sync_checkpoint_failures_total
    - oplog_sync_lag_seconds
    - oplog_sync_state{state}
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.entries_total = Counter(
            'oplog_sync_entries_total',
            'Oplog entries processed',
            ['operation', 'outcome'],
            registry=self.registry
        )
        self.checkpoint_failures_total = Counter(
            'oplog_sync_checkpoint_failures_total',
            'Checkpoint writes that failed',
            registry=self.registry
        )
        self.lag_seconds = Gauge(
            'oplog_sync_lag_seconds',
            'Seconds between the last applied entry and now',
            registry=self.registry
        )
        self.state = Gauge(
            'oplog_sync_state',
            'Current engine state (1 for the active state)',
            ['state'],
            registry=self.registry
        )

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        start_http_server(port, addr=addr, registry=self.registry)

    def on_state_change(self, state: EngineState) -> None:
        for candidate in EngineState:
            self.state.labels(state=candidate.value).set(1 if candidate is state else 0)

    def on_applied(self, entry: LogEntry) -> None:
        self.entries_total.labels(operation=entry.operation_type.name.lower(), outcome="applied").inc()
        self.lag_seconds.set(max(0.0, time.time() - entry.timestamp.time))

    def on_skipped(self, entry: LogEntry) -> None:
        self.entries_total.labels(operation=entry.operation_type.name.lower(), outcome="skipped").inc()

    def on_rejected(self, entry: LogEntry, reason: str) -> None:
        self.entries_total.labels(operation=entry.operation_type.name.lower(), outcome="rejected").inc()

    def on_checkpoint_failed(self, entry: LogEntry, error: Exception) -> None:
        self.checkpoint_failures_total.inc()
