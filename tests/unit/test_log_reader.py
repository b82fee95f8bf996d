"""Unit tests for LogReader."""

import re

import pytest
from bson.timestamp import Timestamp

from oplog_sync.errors import NoNamespacesError, QueryError, TransportError
from oplog_sync.replication.log_reader import IDLE, LogReader
from oplog_sync.replication.models import OperationType

from fakes import FakeSource, make_doc


def open_reader(source, **kwargs):
    kwargs.setdefault("sleep", lambda seconds: None)
    reader = LogReader(source, idle_timeout=0.01, **kwargs)
    reader.open()
    return reader


class TestOpen:

    def test_namespace_filter_covers_every_user_database(self):
        source = FakeSource(databases=["shop", "app"])
        reader = LogReader(source)

        assert reader.open() == ["app", "shop"]
        reader_query = reader._query("$gt", Timestamp(1, 0))
        patterns = reader_query["ns"]["$in"]
        assert [p.pattern for p in patterns] == [r"^app\.", r"^shop\."]

    def test_database_names_are_escaped(self):
        reader = LogReader(FakeSource(databases=["a.b"]))
        reader.open()
        pattern = reader._query("$gt", Timestamp(1, 0))["ns"]["$in"][0]

        assert pattern.match("a.b.users")
        assert not pattern.match("axb.users")

    def test_no_user_databases(self):
        with pytest.raises(NoNamespacesError, match="No databases found"):
            LogReader(FakeSource(databases=[])).open()

    def test_reading_before_open_is_an_error(self):
        reader = LogReader(FakeSource([make_doc(10)]))
        with pytest.raises(RuntimeError, match="open"):
            list(reader.catch_up(Timestamp(1, 0)))

    def test_idle_timeout_must_be_positive(self):
        with pytest.raises(ValueError, match="idle_timeout must be positive"):
            LogReader(FakeSource(), idle_timeout=0)


class TestHead:

    def test_head_is_newest_entry(self):
        source = FakeSource([make_doc(10), make_doc(11), make_doc(12, ns="admin.system", op="n")])
        assert open_reader(source).head() == Timestamp(12, 0)

    def test_empty_oplog(self):
        with pytest.raises(QueryError, match="oplog is empty"):
            open_reader(FakeSource([])).head()

    def test_head_failure_is_query_error(self, disconnect):
        source = FakeSource([make_doc(10)])
        source.find_error = disconnect
        with pytest.raises(QueryError, match="Oplog find one failed"):
            open_reader(source).head()


class TestCatchUp:

    def test_yields_entries_after_start_in_order(self):
        source = FakeSource([make_doc(t) for t in (9, 10, 11, 12)])
        entries = list(open_reader(source).catch_up(Timestamp(10, 0)))

        assert [e.timestamp for e in entries] == [Timestamp(11, 0), Timestamp(12, 0)]
        assert entries[0].operation_type is OperationType.INSERT

    def test_query_restricts_namespace(self):
        source = FakeSource([make_doc(10, ns="app.users"), make_doc(11, ns="other.users")])
        entries = list(open_reader(source).catch_up(Timestamp(1, 0)))

        assert [e.namespace for e in entries] == ["app.users"]

    def test_failure_is_query_error(self, disconnect):
        source = FakeSource([make_doc(10)])
        reader = open_reader(source)
        source.find_error = disconnect

        with pytest.raises(QueryError, match="Catch-up query failed"):
            list(reader.catch_up(Timestamp(1, 0)))

    def test_unknown_operation_is_rejected(self):
        source = FakeSource([make_doc(10, op="x")])
        with pytest.raises(QueryError, match="Unknown oplog operation"):
            list(open_reader(source).catch_up(Timestamp(1, 0)))


class TestTail:

    def test_idle_marker_on_timeout(self):
        source = FakeSource([make_doc(10)])
        tail = open_reader(source).tail(Timestamp(9, 0))

        assert next(tail).timestamp == Timestamp(10, 0)
        assert next(tail) is IDLE
        tail.close()
        assert source.cursors[0].closed

    def test_inclusive_position_is_not_re_yielded(self):
        source = FakeSource([make_doc(10), make_doc(11)])
        tail = open_reader(source).tail(Timestamp(10, 0), inclusive=True)

        assert source.tail_queries == []
        assert next(tail).timestamp == Timestamp(11, 0)
        assert source.tail_queries[0]["ts"] == {"$gte": Timestamp(10, 0)}
        tail.close()

    def test_picks_up_entries_appended_while_idle(self):
        source = FakeSource([make_doc(10)])
        tail = open_reader(source).tail(Timestamp(10, 0))

        assert next(tail) is IDLE
        source.docs.append(make_doc(11, 1))
        assert next(tail).timestamp == Timestamp(11, 1)
        tail.close()

    def test_dead_cursor_waits_then_reopens(self):
        source = FakeSource([make_doc(10)])
        source.kill_cursors = True
        sleeps = []
        tail = open_reader(source, sleep=sleeps.append).tail(Timestamp(10, 0))

        assert next(tail) is IDLE
        assert sleeps == [0.01]
        assert source.cursors[0].closed
        assert next(tail) is IDLE
        assert len(source.tail_queries) == 2
        tail.close()

    def test_failure_is_transport_error(self, disconnect):
        source = FakeSource([make_doc(10)])
        source.tail_error = disconnect
        with pytest.raises(TransportError, match="Error tailing oplog"):
            next(open_reader(source).tail(Timestamp(1, 0)))
