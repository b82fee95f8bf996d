"""
Command line entry point.

    oplog-sync sync --src mongodb://a:27017 --dst mongodb://b:27017 \
        --timestamp-recorder-filepath /var/lib/oplog-sync/ts

Exit status: 0 on a clean stop, 1 on a replication failure, 2 on invalid
configuration.
"""

import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config.settings import (
    DestinationSettings,
    LoggingSettings,
    Settings,
    SourceSettings,
    StoreSettings,
    SyncSettings,
    get_settings,
)
from .errors import ReplicationError
from .mongodb.connection import StoreConnection
from .replication.checkpoint_store import CheckpointStore, FileCheckpointStore, SQLCheckpointStore
from .replication.engine import ReplicationEngine
from .replication.metrics import PrometheusObserver
from .utils.logging import configure_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

# argparse dest -> (settings section, field)
_FLAG_FIELDS = {
    "src": ("source", "uri"),
    "src_ssl": ("source", "ssl"),
    "src_tls_insecure": ("source", "tls_allow_invalid_certificates"),
    "src_username": ("source", "username"),
    "src_password": ("source", "password"),
    "src_auth_mechanism": ("source", "auth_mechanism"),
    "dst": ("destination", "uri"),
    "dst_ssl": ("destination", "ssl"),
    "dst_tls_insecure": ("destination", "tls_allow_invalid_certificates"),
    "dst_username": ("destination", "username"),
    "dst_password": ("destination", "password"),
    "dst_auth_mechanism": ("destination", "auth_mechanism"),
    "since": ("sync", "since"),
    "ordinal": ("sync", "ordinal"),
    "ignore_apply_error": ("sync", "ignore_apply_error"),
    "fast_stop": ("sync", "fast_stop"),
    "checkpoint_path": ("sync", "checkpoint_path"),
    "checkpoint_url": ("sync", "checkpoint_url"),
    "checkpoint_name": ("sync", "checkpoint_name"),
    "idle_timeout": ("sync", "idle_timeout"),
    "batch_size": ("sync", "catch_up_batch_size"),
    "prefetch_size": ("sync", "prefetch_size"),
    "metrics_port": ("sync", "metrics_port"),
    "log_level": ("logging", "level"),
    "log_format": ("logging", "format"),
}

_SECTIONS = {
    "source": SourceSettings,
    "destination": DestinationSettings,
    "sync": SyncSettings,
    "logging": LoggingSettings,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oplog-sync",
        description="Replicate a MongoDB oplog from one deployment to another"
    )
    parser.add_argument("--log-level", help="log level (default INFO)")
    parser.add_argument("--log-format", choices=["json", "text"], help="log output format")

    commands = parser.add_subparsers(dest="command", required=True)
    sync = commands.add_parser("sync", help="Tails the source oplog and syncs to destination")

    for side, label in (("src", "source"), ("dst", "destination")):
        sync.add_argument(f"--{side}", metavar="URI", help=f"{label} MongoDB URI")
        sync.add_argument(f"--{side}-ssl", action="store_true", default=None, help=f"connect to {label} with TLS")
        sync.add_argument(
            f"--{side}-tls-insecure", action="store_true", default=None,
            help=f"skip TLS certificate verification for {label}"
        )
        sync.add_argument(f"--{side}-username", help=f"{label} username")
        sync.add_argument(f"--{side}-password", help=f"{label} password")
        sync.add_argument(f"--{side}-auth-mechanism", help=f"{label} authentication mechanism")

    sync.add_argument("--timeout", type=int, help="timeout in seconds for db connections, default is 300s")
    sync.add_argument("--since", type=int, help="seconds since the Unix epoch")
    sync.add_argument("--ordinal", type=int, help="incrementing ordinal for operations within a given second")
    sync.add_argument(
        "--ignore-apply-error", action="store_true", default=None,
        help="ignore errors applying oplog entries"
    )
    sync.add_argument(
        "--fast-stop", action="store_true", default=None,
        help="stop at the first idle timeout while tailing"
    )
    sync.add_argument(
        "--timestamp-recorder-filepath", "--checkpoint-path", dest="checkpoint_path",
        help="filepath for timestamp record"
    )
    sync.add_argument("--checkpoint-url", help="SQLAlchemy URL for a database-backed checkpoint")
    sync.add_argument("--checkpoint-name", help="checkpoint key when using --checkpoint-url")
    sync.add_argument("--idle-timeout", type=float, help="seconds to wait for new entries while tailing")
    sync.add_argument("--batch-size", type=int, help="cursor batch size during catch-up")
    sync.add_argument("--prefetch-size", type=int, help="read-ahead queue capacity (0 disables)")
    sync.add_argument("--metrics-port", type=int, help="serve Prometheus metrics on this port")
    return parser


def load_settings(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """
    Merge command line flags over environment settings.

    Raises:
        ValidationError: If the merged values are invalid
    """
    base = base or get_settings()
    overrides: Dict[str, Dict[str, Any]] = {name: {} for name in _SECTIONS}

    for dest, (section, field) in _FLAG_FIELDS.items():
        value = getattr(args, dest, None)
        if value is not None:
            overrides[section][field] = value

    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        overrides["source"]["timeout"] = timeout
        overrides["destination"]["timeout"] = timeout

    sections = {
        name: cls(**{**getattr(base, name).model_dump(), **overrides[name]})
        for name, cls in _SECTIONS.items()
    }
    return Settings(**sections)


def build_checkpoint_store(sync: SyncSettings) -> Optional[CheckpointStore]:
    if sync.checkpoint_path:
        return FileCheckpointStore(sync.checkpoint_path)
    if sync.checkpoint_url:
        return SQLCheckpointStore(sync.checkpoint_url, name=sync.checkpoint_name)
    return None


def _connect(settings: StoreSettings, name: str) -> StoreConnection:
    return StoreConnection.connect(
        settings.uri,
        username=settings.username,
        password=settings.password,
        tls=settings.ssl,
        tls_allow_invalid_certificates=settings.tls_allow_invalid_certificates,
        timeout=settings.timeout,
        auth_mechanism=settings.auth_mechanism,
        name=name,
    )


def run_sync(settings: Settings) -> int:
    """Connect both stores and replicate until stopped."""
    checkpoint_store = None
    source = destination = None
    try:
        checkpoint_store = build_checkpoint_store(settings.sync)
        source = _connect(settings.source, "source")
        destination = _connect(settings.destination, "destination")

        observer = PrometheusObserver()
        if settings.sync.metrics_port:
            try:
                observer.serve(settings.sync.metrics_port)
            except OSError as e:
                logger.error(
                    f"Cannot serve metrics on port {settings.sync.metrics_port}: {e}",
                    extra={"metrics_port": settings.sync.metrics_port}
                )
                return EXIT_FAILED
            logger.info(f"Serving metrics on port {settings.sync.metrics_port}")

        engine = ReplicationEngine.from_connections(
            source,
            destination,
            checkpoint_store=checkpoint_store,
            config=settings.sync.engine_config(),
            idle_timeout=settings.sync.idle_timeout,
            batch_size=settings.sync.catch_up_batch_size,
            observer=observer,
        )
        engine.run(handle_signals=True)
        return EXIT_OK

    except ReplicationError as e:
        logger.error(f"Error: sync oplog - {e}", extra={"error_type": type(e).__name__})
        return EXIT_FAILED

    finally:
        for resource in (destination, source, checkpoint_store):
            if resource is not None:
                resource.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(settings.logging.level, settings.logging.format)

    return run_sync(settings)
