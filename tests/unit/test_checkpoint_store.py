"""Unit tests for checkpoint stores."""

import os

import pytest
from bson.timestamp import Timestamp

from oplog_sync.replication.checkpoint_store import FileCheckpointStore, SQLCheckpointStore
from oplog_sync.errors import CheckpointReadError, CheckpointWriteError


class TestFileCheckpointStore:

    def test_missing_file_is_absent(self, tmp_path):
        assert FileCheckpointStore(tmp_path / "ts").read() is None

    def test_write_then_read(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "ts")
        store.write(Timestamp(1700000000, 4))

        assert store.read() == Timestamp(1700000000, 4)

    def test_file_holds_packed_integer(self, tmp_path):
        path = tmp_path / "ts"
        FileCheckpointStore(path).write(Timestamp(105, 0))

        assert path.read_text() == str(105 << 32)

    def test_reads_value_written_by_hand(self, tmp_path):
        path = tmp_path / "ts"
        path.write_text(f"{(100 << 32) + 2}\n")

        assert FileCheckpointStore(path).read() == Timestamp(100, 2)

    def test_overwrites_previous_value(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "ts")
        store.write(Timestamp(1, 1))
        store.write(Timestamp(2, 1))

        assert store.read() == Timestamp(2, 1)
        assert os.listdir(tmp_path) == ["ts"]

    def test_creates_parent_directory(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "state" / "ts")
        store.write(Timestamp(3, 0))

        assert store.read() == Timestamp(3, 0)

    def test_garbage_is_read_error(self, tmp_path):
        path = tmp_path / "ts"
        path.write_text("not-a-number")

        with pytest.raises(CheckpointReadError, match="Invalid checkpoint value"):
            FileCheckpointStore(path).read()

    def test_empty_file_is_read_error(self, tmp_path):
        path = tmp_path / "ts"
        path.write_text("")

        with pytest.raises(CheckpointReadError):
            FileCheckpointStore(path).read()

    def test_directory_in_place_of_file_is_read_error(self, tmp_path):
        with pytest.raises(CheckpointReadError):
            FileCheckpointStore(tmp_path).read()

    def test_unwritable_location_is_write_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(CheckpointWriteError):
            FileCheckpointStore(blocker / "ts").write(Timestamp(1, 1))


class TestSQLCheckpointStore:

    @pytest.fixture
    def url(self, tmp_path):
        return f"sqlite:///{tmp_path / 'checkpoints.db'}"

    def test_absent_until_written(self, url):
        store = SQLCheckpointStore(url, name="prod-to-dr")
        try:
            assert store.read() is None
        finally:
            store.close()

    def test_upsert(self, url):
        store = SQLCheckpointStore(url, name="prod-to-dr")
        try:
            store.write(Timestamp(10, 1), entries_applied=1)
            store.write(Timestamp(12, 0), entries_applied=2)
            assert store.read() == Timestamp(12, 0)
        finally:
            store.close()

    def test_names_are_independent(self, url):
        first = SQLCheckpointStore(url, name="a")
        second = SQLCheckpointStore(url, name="b")
        try:
            first.write(Timestamp(10, 0))
            assert second.read() is None
        finally:
            first.close()
            second.close()

    def test_survives_reopen(self, url):
        store = SQLCheckpointStore(url, name="prod-to-dr")
        store.write(Timestamp(99, 9))
        store.close()

        reopened = SQLCheckpointStore(url, name="prod-to-dr")
        try:
            assert reopened.read() == Timestamp(99, 9)
        finally:
            reopened.close()

    def test_unreachable_database(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'missing' / 'dir' / 'checkpoints.db'}"
        with pytest.raises(CheckpointReadError, match="Database connection failed"):
            SQLCheckpointStore(url)
