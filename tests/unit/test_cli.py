"""Unit tests for the command line entry point."""

from unittest.mock import MagicMock, Mock

import pytest
from bson.timestamp import Timestamp

from oplog_sync import cli
from oplog_sync.config.settings import Settings
from oplog_sync.errors import ServerRejected, StoreConnectionError
from oplog_sync.replication.checkpoint_store import FileCheckpointStore, SQLCheckpointStore
from oplog_sync.replication.models import ReplicationStats


@pytest.fixture(autouse=True)
def clean_settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "get_settings", Settings)
    monkeypatch.setattr(cli, "configure_logging", Mock())


def parse(*argv):
    return cli.build_parser().parse_args(["sync", *argv])


class TestLoadSettings:

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("SRC_URI", "mongodb://from-env:27017")
        monkeypatch.setenv("SYNC_IGNORE_APPLY_ERROR", "true")

        settings = cli.load_settings(parse("--src", "mongodb://from-flag:27017", "--since", "100"))

        assert settings.source.uri == "mongodb://from-flag:27017"
        assert settings.sync.since == 100
        assert settings.sync.ignore_apply_error

    def test_unset_boolean_flags_keep_environment(self, monkeypatch):
        monkeypatch.setenv("DST_SSL", "true")

        settings = cli.load_settings(parse())

        assert settings.destination.ssl
        assert not settings.source.ssl

    def test_side_specific_flags(self):
        settings = cli.load_settings(parse(
            "--src-ssl", "--src-username", "reader",
            "--dst-tls-insecure", "--dst-auth-mechanism", "SCRAM-SHA-256",
        ))

        assert settings.source.ssl
        assert settings.source.username == "reader"
        assert settings.destination.tls_allow_invalid_certificates
        assert settings.destination.auth_mechanism == "SCRAM-SHA-256"

    def test_timeout_applies_to_both_sides(self):
        settings = cli.load_settings(parse("--timeout", "30"))

        assert settings.source.timeout == 30
        assert settings.destination.timeout == 30

    def test_legacy_checkpoint_flag(self):
        settings = cli.load_settings(parse("--timestamp-recorder-filepath", "/tmp/ts"))
        assert settings.sync.checkpoint_path == "/tmp/ts"

    def test_global_logging_flags(self):
        args = cli.build_parser().parse_args(["--log-format", "text", "sync"])
        assert cli.load_settings(args).logging.format == "text"


class TestBuildCheckpointStore:

    def test_none_configured(self):
        assert cli.build_checkpoint_store(Settings().sync) is None

    def test_file(self, tmp_path):
        settings = cli.load_settings(parse("--checkpoint-path", str(tmp_path / "ts")))
        assert isinstance(cli.build_checkpoint_store(settings.sync), FileCheckpointStore)

    def test_sql(self, tmp_path):
        settings = cli.load_settings(parse(
            "--checkpoint-url", f"sqlite:///{tmp_path / 'cp.db'}",
            "--checkpoint-name", "prod-to-dr",
        ))
        store = cli.build_checkpoint_store(settings.sync)
        try:
            assert isinstance(store, SQLCheckpointStore)
            assert store.name == "prod-to-dr"
        finally:
            store.close()


class TestMain:

    @pytest.fixture
    def connections(self, monkeypatch):
        source, destination = MagicMock(name="source"), MagicMock(name="destination")
        connect = Mock(side_effect=[source, destination])
        monkeypatch.setattr(cli.StoreConnection, "connect", connect)
        return connect, source, destination

    @pytest.fixture
    def engine(self, monkeypatch):
        engine = Mock()
        engine.run.return_value = ReplicationStats()
        from_connections = Mock(return_value=engine)
        monkeypatch.setattr(cli.ReplicationEngine, "from_connections", from_connections)
        return from_connections, engine

    def test_invalid_configuration_exits_2(self, capsys):
        assert cli.main(["sync", "--idle-timeout", "0"]) == cli.EXIT_USAGE
        assert "Invalid configuration" in capsys.readouterr().err

    def test_conflicting_checkpoints_exit_2(self):
        code = cli.main(["sync", "--checkpoint-path", "/tmp/ts", "--checkpoint-url", "sqlite://"])
        assert code == cli.EXIT_USAGE

    def test_clean_stop_exits_0(self, connections, engine, tmp_path):
        connect, source, destination = connections
        from_connections, running = engine

        code = cli.main([
            "sync", "--src", "mongodb://a", "--dst", "mongodb://b",
            "--since", "100", "--ordinal", "2",
            "--checkpoint-path", str(tmp_path / "ts"),
        ])

        assert code == cli.EXIT_OK
        assert connect.call_args_list[0].args == ("mongodb://a",)
        assert connect.call_args_list[1].kwargs["name"] == "destination"
        _, kwargs = from_connections.call_args
        assert kwargs["config"].since == Timestamp(100, 2)
        assert isinstance(kwargs["checkpoint_store"], FileCheckpointStore)
        running.run.assert_called_once_with(handle_signals=True)
        source.close.assert_called_once()
        destination.close.assert_called_once()

    def test_replication_failure_exits_1(self, connections, engine):
        _, source, destination = connections
        _, running = engine
        running.run.side_effect = ServerRejected("applyOps failed", reason="duplicate key")

        assert cli.main(["sync"]) == cli.EXIT_FAILED
        source.close.assert_called_once()
        destination.close.assert_called_once()

    def test_unreachable_destination_exits_1(self, monkeypatch, engine):
        source = MagicMock(name="source")
        monkeypatch.setattr(
            cli.StoreConnection, "connect",
            Mock(side_effect=[source, StoreConnectionError("Cannot connect to destination")])
        )

        assert cli.main(["sync"]) == cli.EXIT_FAILED
        source.close.assert_called_once()

    def test_metrics_server_started_when_port_given(self, connections, engine, monkeypatch):
        serve = Mock()
        monkeypatch.setattr(cli.PrometheusObserver, "serve", serve)

        assert cli.main(["sync", "--metrics-port", "9108"]) == cli.EXIT_OK
        serve.assert_called_once_with(9108)

    def test_metrics_port_in_use_exits_1(self, connections, engine, monkeypatch):
        _, source, destination = connections
        from_connections, _ = engine
        monkeypatch.setattr(
            cli.PrometheusObserver, "serve", Mock(side_effect=OSError(98, "Address already in use"))
        )

        assert cli.main(["sync", "--metrics-port", "9108"]) == cli.EXIT_FAILED
        from_connections.assert_not_called()
        source.close.assert_called_once()
        destination.close.assert_called_once()
