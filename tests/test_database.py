"""Tests for the connection store"""
import asyncio
import json
import sqlite3

import pytest

from degrees.database import ConnectionStore, decode_path
from degrees.errors import ResetNotPermitted, StorageError


def _count_rows(store, table, where="1=1", args=()):
    conn = sqlite3.connect(store.database_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", args).fetchone()[0]
    finally:
        conn.close()


class TestOpen:
    async def test_open_is_idempotent(self, tmp_path):
        store = ConnectionStore(tmp_path / "db.sqlite")
        assert not store.is_open

        assert await store.open() is store
        await store.open()

        assert store.is_open

    async def test_concurrent_open_initializes_once(self, tmp_path, monkeypatch):
        store = ConnectionStore(tmp_path / "db.sqlite")
        calls = []
        original = store._init_db

        def counting_init():
            calls.append(1)
            original()

        monkeypatch.setattr(store, "_init_db", counting_init)

        await asyncio.gather(*(store.open() for _ in range(5)))

        assert calls == [1]
        assert store.is_open

    async def test_failed_open_can_be_retried(self, tmp_path, monkeypatch):
        store = ConnectionStore(tmp_path / "db.sqlite")
        original = store._init_db
        attempts = []

        def flaky_init():
            attempts.append(1)
            if len(attempts) == 1:
                raise sqlite3.OperationalError("disk I/O error")
            original()

        monkeypatch.setattr(store, "_init_db", flaky_init)

        with pytest.raises(sqlite3.OperationalError):
            await store.open()
        assert not store.is_open

        await store.open()
        assert store.is_open
        assert len(attempts) == 2

    async def test_reads_before_open_are_empty(self, tmp_path):
        store = ConnectionStore(tmp_path / "db.sqlite")

        assert await store.edges_from(1) == []
        assert await store.recent_searches(from_fid=1) == []

    async def test_writes_before_open_raise(self, tmp_path):
        store = ConnectionStore(tmp_path / "db.sqlite")

        with pytest.raises(StorageError):
            await store.upsert_edge(1, 2)


class TestEdges:
    async def test_upsert_twice_keeps_one_row_with_later_timestamp(self, store):
        await store.upsert_edge(1, 2)
        first = (await store.edges_from(1))[0].last_updated

        await asyncio.sleep(0.001)
        await store.upsert_edge(1, 2)

        edges = await store.edges_from(1)
        assert len(edges) == 1
        assert _count_rows(store, "edges", "from_fid = ? AND to_fid = ?", (1, 2)) == 1
        assert edges[0].last_updated > first

    async def test_edges_from_matches_either_direction(self, store):
        await store.upsert_edges([(1, 2), (3, 1), (4, 5)])

        edges = await store.edges_from(1)

        assert {(e.from_, e.to) for e in edges} == {(1, 2), (3, 1)}
        assert {e.other(1) for e in edges} == {2, 3}

    async def test_edges_from_unknown_identity(self, store):
        assert await store.edges_from(42) == []

    async def test_upsert_edges_empty_batch(self, store):
        assert await store.upsert_edges([]) == 0

    async def test_missing_table_is_recreated(self, store):
        conn = sqlite3.connect(store.database_path)
        conn.execute("DROP TABLE edges")
        conn.commit()
        conn.close()

        assert await store.edges_from(1) == []

        conn = sqlite3.connect(store.database_path)
        conn.execute("DROP TABLE edges")
        conn.commit()
        conn.close()

        await store.upsert_edge(1, 2)
        assert [(e.from_, e.to) for e in await store.edges_from(2)] == [(1, 2)]

    async def test_concurrent_upserts_of_same_key(self, store):
        await asyncio.gather(*(store.upsert_edge(7, 8) for _ in range(10)))

        assert _count_rows(store, "edges") == 1

    async def test_locked_database_backs_off_then_raises(self, store, monkeypatch):
        sleeps = []
        monkeypatch.setattr("degrees.database.time.sleep", sleeps.append)

        def always_locked():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(StorageError):
            await store._write(always_locked)

        assert sleeps == [0.1, 0.2, 0.4]

    async def test_locked_database_recovers(self, store, monkeypatch):
        sleeps = []
        monkeypatch.setattr("degrees.database.time.sleep", sleeps.append)
        attempts = []

        def locked_twice():
            attempts.append(1)
            if len(attempts) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        assert await store._write(locked_twice) == "done"
        assert sleeps == [0.1, 0.2]


class TestSearches:
    async def test_record_search_returns_ids(self, store):
        first = await store.record_search(1, 1, 3, [1, 2, 3])
        second = await store.record_search(None, 4, 5, [4, 5])

        assert second > first
        record = await store.get_search(first)
        assert record.searcher == 1
        assert record.from_ == 1
        assert record.to == 3
        assert record.path == [1, 2, 3]
        assert record.degree == 2

    async def test_recent_searches_most_recent_first(self, store):
        older = await store.record_search(1, 1, 3, [1, 2, 3])
        newer = await store.record_search(1, 1, 3, [1, 9, 3])
        await store.record_search(1, 1, 4, [1, 4])

        records = await store.recent_searches(from_fid=1, to_fid=3)

        assert [r.id for r in records] == [newer, older]

    async def test_recent_searches_filters_and_limit(self, store):
        for target in (2, 3, 4):
            await store.record_search(1, 1, target, [1, target])
        await store.record_search(5, 5, 2, [5, 2])

        assert len(await store.recent_searches(from_fid=1)) == 3
        assert [r.from_ for r in await store.recent_searches(to_fid=2)] == [5, 1]
        assert len(await store.recent_searches(limit=2)) == 2
        assert await store.recent_searches(from_fid=99) == []

    async def test_get_search_missing(self, store):
        assert await store.get_search(12345) is None

    async def test_legacy_and_corrupt_paths(self, store):
        conn = sqlite3.connect(store.database_path)
        conn.execute(
            "INSERT INTO searches (searcher_fid, from_fid, to_fid, path_json, hops, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (1, 1, 2, json.dumps([{"fid": 1, "username": "a"}, {"fid": 2, "username": "b"}]), 1,
             "2024-01-01T00:00:00.000000+00:00")
        )
        conn.execute(
            "INSERT INTO searches (searcher_fid, from_fid, to_fid, path_json, hops, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (1, 3, 4, "not json", 0, "2024-01-01T00:00:00.000000+00:00")
        )
        conn.commit()
        conn.close()

        legacy = await store.recent_searches(from_fid=1, to_fid=2)
        corrupt = await store.recent_searches(from_fid=3, to_fid=4)

        assert legacy[0].path == [1, 2]
        assert corrupt[0].path == []

    async def test_stats(self, store):
        await store.upsert_edges([(1, 2), (2, 1)])
        await store.record_search(1, 1, 2, [1, 2])
        await store.record_search(1, 1, 3, [1, 2, 3])

        stats = await store.stats()

        assert stats == {"total_edges": 2, "total_searches": 2, "avg_degree": 1.5}


class TestDecodePath:
    def test_plain_identities(self):
        assert decode_path("[1, 2, 3]") == [1, 2, 3]

    @pytest.mark.parametrize("raw", ['{"fid": 1}', "[1, -2]", '[1, "2"]', "[1, true]"])
    def test_rejects_invalid_payloads(self, raw):
        with pytest.raises(ValueError):
            decode_path(raw)


class TestReset:
    async def test_reset_clears_everything(self, store):
        await store.upsert_edge(1, 2)
        await store.record_search(1, 1, 2, [1, 2])

        await store.reset_all()

        assert await store.edges_from(1) == []
        assert await store.recent_searches() == []
        await store.upsert_edge(3, 4)
        assert len(await store.edges_from(3)) == 1

    async def test_reset_not_permitted_in_production(self, tmp_path):
        store = ConnectionStore(tmp_path / "prod.db", allow_reset=False)
        await store.open()
        await store.upsert_edge(1, 2)

        with pytest.raises(ResetNotPermitted):
            await store.reset_all()

        assert len(await store.edges_from(1)) == 1
