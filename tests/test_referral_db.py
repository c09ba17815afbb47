import asyncio
import os
import uuid
from contextlib import asynccontextmanager

import psycopg
import pytest
import pytest_asyncio
from psycopg import sql
from psycopg.errors import UniqueViolation

import referral_db
from db import repositories
from db.db import get_conn
from document_store import DuplicateKeyError
from errors import StoreUnavailable
from models import ReadOptions, WriteOptions
from referral_db import PostgresDocumentStore
from referral_engine import ReferralTree

LIVE_DSN = os.environ.get("REFERRAL_TEST_DSN")
live = pytest.mark.skipif(not LIVE_DSN, reason="REFERRAL_TEST_DSN not set")


class FakeConn:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def own_conn(monkeypatch):
    """replace get_conn so PostgresCollection runs against a FakeConn."""
    conn = FakeConn()

    @asynccontextmanager
    async def fake_get_conn(dsn=None):
        yield conn

    monkeypatch.setattr(referral_db, "get_conn", fake_get_conn)
    return conn


@pytest.mark.asyncio
async def test_own_connection_is_committed(own_conn, monkeypatch):
    seen = []

    async def fake_push_child(conn, table, key, level, entry):
        seen.append((conn, table, key, level, entry))
        return {"id": key}

    monkeypatch.setattr(repositories, "push_child", fake_push_child)

    coll = PostgresDocumentStore("dbname=x").collection("referrals")
    assert await coll.push_child("A", 1, {"id": "B", "payload": "p"}) == {"id": "A"}

    assert seen == [(own_conn, "referrals", "A", 1, {"id": "B", "payload": "p"})]
    assert own_conn.commits == 1
    assert own_conn.rollbacks == 0


@pytest.mark.asyncio
async def test_session_is_used_and_not_committed(monkeypatch):
    @asynccontextmanager
    async def no_conn(dsn=None):
        raise AssertionError("must not open a connection when a session is given")
        yield

    monkeypatch.setattr(referral_db, "get_conn", no_conn)

    seen = []

    async def fake_find(conn, table, key, fields=None):
        seen.append((conn, fields))
        return None

    monkeypatch.setattr(repositories, "find_document", fake_find)

    session = FakeConn()
    coll = PostgresDocumentStore().collection("referrals")
    await coll.find("A", fields=("ancestors",), options=ReadOptions(session=session))

    assert seen == [(session, ("ancestors",))]
    assert session.commits == 0


@pytest.mark.asyncio
async def test_failed_statement_rolls_back(own_conn, monkeypatch):
    async def boom(conn, table, key, payload):
        raise RuntimeError("boom")

    monkeypatch.setattr(repositories, "set_payload", boom)

    with pytest.raises(RuntimeError):
        await PostgresDocumentStore().collection("referrals").set_payload("A", "x")

    assert own_conn.rollbacks == 1
    assert own_conn.commits == 0


@pytest.mark.asyncio
async def test_operational_error_becomes_store_unavailable(own_conn, monkeypatch):
    async def down(conn, table, key):
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(repositories, "delete_document", down)

    with pytest.raises(StoreUnavailable):
        await PostgresDocumentStore().collection("referrals").delete("A")


@pytest.mark.asyncio
async def test_unique_violation_becomes_duplicate_key(own_conn, monkeypatch):
    async def taken(conn, table, doc):
        raise UniqueViolation("duplicate key value violates unique constraint")

    monkeypatch.setattr(repositories, "insert_document", taken)

    with pytest.raises(DuplicateKeyError):
        await PostgresDocumentStore().collection("referrals").insert({"id": "A"})


def test_collections_are_cached_per_name():
    store = PostgresDocumentStore("dbname=x")
    assert store.collection("a") is store.collection("a")
    assert store.collection("a").table == "a"
    assert store.collection("b").dsn == "dbname=x"


# ---------
# live database (set REFERRAL_TEST_DSN to run)
# ---------


@pytest_asyncio.fixture
async def live_tree():
    table = f"referrals_test_{uuid.uuid4().hex[:8]}"
    async with get_conn(LIVE_DSN) as conn:
        await repositories.create_table(conn, table)
        await conn.commit()

    yield ReferralTree(PostgresDocumentStore(LIVE_DSN), collection=table)

    async with get_conn(LIVE_DSN) as conn:
        await conn.execute(sql.SQL("DROP TABLE IF EXISTS {}").format(sql.Identifier(table)))
        await conn.commit()


@live
@pytest.mark.asyncio
async def test_live_end_to_end(live_tree):
    tree = live_tree
    parent = None
    for referral_id in ("r", "u1", "u2", "u3"):
        await tree.create_referral(referral_id, "p_" + referral_id, parent)
        parent = referral_id
    await tree.create_referral("u3b", "p_u3b", "u2")

    u3 = await tree.get_referral("u3")
    assert u3.ancestor_map() == {1: "u2", 2: "u1", 3: "r"}

    await tree.update_referral_payload("u3", "updated")
    r = await tree.get_referral("r")
    assert {d.id: d.payload for d in r.descendants(3)} == {"u3": "updated", "u3b": "p_u3b"}

    await tree.remove_referral("u3")
    assert await tree.get_referral("u3") is None
    r = await tree.get_referral("r")
    assert [d.id for d in r.descendants(3)] == ["u3b"]
    u2 = await tree.get_referral("u2")
    assert [d.id for d in u2.descendants(1)] == ["u3b"]


@live
@pytest.mark.asyncio
async def test_live_concurrent_siblings(live_tree):
    await live_tree.create_referral("parent", "p")

    await asyncio.gather(
        *(live_tree.create_referral(f"kid{i}", "p", "parent") for i in range(5))
    )

    parent = await live_tree.get_referral("parent")
    assert sorted(d.id for d in parent.descendants(1)) == [f"kid{i}" for i in range(5)]


@live
@pytest.mark.asyncio
async def test_live_session_rollback(live_tree):
    """writes on a caller-owned session are left to the caller's transaction."""
    async with get_conn(LIVE_DSN) as conn:
        await live_tree.create_referral("temp", "p", options=WriteOptions(session=conn))
        await conn.rollback()

    assert await live_tree.get_referral("temp") is None
