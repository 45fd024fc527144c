import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import date

import pytest

from eotracker import db as db_mod
from eotracker.db import DatabasePool
from eotracker.errors import ConfigError, PersistenceError
from eotracker.store import PostgresDocumentStore

from tests.fakes import make_doc


class _FakeDb:
    """In-memory stand-in for the executive_orders tables."""

    def __init__(self, fail_on_insert=None):
        self.orders = {}
        self.labels = {"categories": {}, "agencies": {}}
        self.links = {"order_categories": set(), "order_agencies": set()}
        self.fail_on_insert = fail_on_insert
        self.inserts = 0
        self.executed = []

    def snapshot(self):
        return copy.deepcopy((self.orders, self.labels, self.links))

    def restore(self, state):
        self.orders, self.labels, self.links = state


class _FakeTransaction:
    def __init__(self, db):
        self.db = db
        self.state = None

    async def __aenter__(self):
        self.state = self.db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.db.restore(self.state)
        return False


class _FakeConn:
    def __init__(self, db):
        self.db = db

    def transaction(self):
        return _FakeTransaction(self.db)

    async def execute(self, sql, *args):
        self.db.executed.append(sql)
        if sql.strip().startswith("update executive_orders"):
            order_id, type_, number, title, summary, content, day = args
            self.db.orders[order_id].update(
                type=type_, number=number, title=title, summary=summary, content=content, date=day,
            )

    async def executemany(self, sql, rows):
        table = "order_categories" if "order_categories" in sql else "order_agencies"
        self.db.links[table].update(rows)

    async def fetchval(self, sql, *args):
        if "count(*)" in sql:
            return len(self.db.orders)
        if "into executive_orders" in sql:
            self.db.inserts += 1
            if self.db.fail_on_insert == self.db.inserts:
                raise RuntimeError("unique violation")
            identifier, type_, number, title, summary, content, day, url = args
            order_id = len(self.db.orders) + 1
            self.db.orders[order_id] = dict(
                id=order_id, identifier=identifier, type=type_, number=number, title=title,
                summary=summary, content=content, date=day, url=url,
            )
            return order_id
        table = "categories" if "into categories" in sql else "agencies"
        ids = self.db.labels[table]
        return ids.setdefault(args[0], len(ids) + 1)

    async def fetch(self, sql, *args):
        rows = list(self.db.orders.values())
        if args:
            rows = [r for r in rows if r["date"] >= args[0]]
        return rows

    async def fetchrow(self, sql, url, identifier):
        rows = list(self.db.orders.values())
        for r in rows:
            if r["url"] == url:
                return r
        for r in rows:
            if r["identifier"] == identifier:
                return r
        return None


class _FakePool:
    def __init__(self, db):
        self.db = db
        self.closed = False

    @asynccontextmanager
    async def connection(self):
        yield _FakeConn(self.db)

    async def close(self):
        self.closed = True


def _store(db):
    return PostgresDocumentStore(_FakePool(db))


def _linked(db, table, label_table, order_id):
    names = {v: k for k, v in db.labels[label_table].items()}
    return sorted(names[label_id] for oid, label_id in db.links[table] if oid == order_id)


def test_insert_links_every_label():
    db = _FakeDb()
    docs = [
        make_doc(1, categories=["Immigration", "National Security"], agencies=["Department of Homeland Security"]),
        make_doc(2, categories=["Immigration"], agencies=[]),
    ]

    assert asyncio.run(_store(db).insert_documents(docs)) == 2

    assert len(db.orders) == 2
    assert sorted(db.labels["categories"]) == ["Immigration", "National Security"]
    assert _linked(db, "order_categories", "categories", 1) == ["Immigration", "National Security"]
    assert _linked(db, "order_agencies", "agencies", 1) == ["Department of Homeland Security"]
    assert _linked(db, "order_categories", "categories", 2) == ["Immigration"]
    assert _linked(db, "order_agencies", "agencies", 2) == []


def test_failed_insert_commits_nothing():
    db = _FakeDb(fail_on_insert=2)
    docs = [make_doc(i, categories=["Economy"], agencies=["Department of Treasury"]) for i in range(3)]

    with pytest.raises(PersistenceError) as exc:
        asyncio.run(_store(db).insert_documents(docs))

    assert "3 documents" in str(exc.value)
    assert db.orders == {}
    assert db.labels == {"categories": {}, "agencies": {}}
    assert db.links == {"order_categories": set(), "order_agencies": set()}


def test_known_keys_respect_floor():
    db = _FakeDb()
    store = _store(db)
    asyncio.run(store.insert_documents([make_doc(1), make_doc(2, date=date(2024, 11, 5))]))

    known = asyncio.run(store.load_known_keys(date(2025, 1, 1)))
    assert known.contains(make_doc(1))
    assert not known.contains(make_doc(2))

    everything = asyncio.run(store.load_known_keys())
    assert everything.contains(make_doc(2))


def test_update_skips_unchanged_rows():
    db = _FakeDb()
    store = _store(db)
    asyncio.run(store.insert_documents([make_doc(1, summary="s", content="c")]))

    assert asyncio.run(store.update_documents([make_doc(1, summary="s", content="c")])) == 0
    assert not any(sql.strip().startswith("update") for sql in db.executed)


def test_update_rewrites_changed_row_found_by_url():
    db = _FakeDb()
    store = _store(db)
    asyncio.run(store.insert_documents([make_doc(1, content="old")]))

    changed = make_doc(1, identifier="PM-7", content="new body", categories=["Labor"])
    assert asyncio.run(store.update_documents([changed])) == 1

    assert db.orders[1]["content"] == "new body"
    assert _linked(db, "order_categories", "categories", 1) == ["Labor"]


def test_count_and_close():
    db = _FakeDb()
    store = _store(db)
    asyncio.run(store.insert_documents([make_doc(1), make_doc(2)]))
    assert asyncio.run(store.count()) == 2
    asyncio.run(store.close())
    assert store.pool.closed


class _PoolObject:
    async def close(self):
        pass


def test_pool_init_retries_transient_failures(monkeypatch):
    attempts = []

    async def create_pool(dsn, **kwargs):
        attempts.append(dsn)
        if len(attempts) == 1:
            raise OSError("connection refused")
        return _PoolObject()

    monkeypatch.setattr(db_mod.asyncpg, "create_pool", create_pool)

    async def scenario():
        pool = DatabasePool("postgresql://localhost/eo", init_retry_delay=0)
        first = await pool.get_pool()
        second = await pool.get_pool()
        return first, second

    first, second = asyncio.run(scenario())
    assert len(attempts) == 2
    assert first is second


def test_pool_init_gives_up_after_timeouts(monkeypatch):
    attempts = []

    async def create_pool(dsn, **kwargs):
        attempts.append(dsn)
        await asyncio.sleep(1)

    monkeypatch.setattr(db_mod.asyncpg, "create_pool", create_pool)

    async def scenario():
        pool = DatabasePool("postgresql://localhost/eo", connect_timeout=0.01, init_retries=1, init_retry_delay=0)
        await pool.init()

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())
    assert len(attempts) == 2


def test_pool_requires_dsn():
    with pytest.raises(ConfigError):
        DatabasePool(None)
