"""Tests for the versioned SQLite document store."""

import asyncio
from datetime import datetime

import pytest
import pytest_asyncio

from personamem.exceptions import DatabaseError, PersistenceConflict
from personamem.storage import DocumentStore


@pytest_asyncio.fixture
async def db(tmp_path):
    store = DocumentStore(tmp_path / "personamem.db")
    await store.initialize()
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_insert_and_get(db):
    version = await db.save("things", "a", {"name": "first", "at": datetime(2026, 1, 1)}, 0)
    assert version == 1
    body, stored_version = await db.get("things", "a")
    assert body == {"name": "first", "at": "2026-01-01T00:00:00"}
    assert stored_version == 1


@pytest.mark.asyncio
async def test_get_missing(db):
    assert await db.get("things", "nope") is None


@pytest.mark.asyncio
async def test_insert_conflicts_when_exists(db):
    await db.save("things", "a", {"n": 1}, 0)
    with pytest.raises(PersistenceConflict):
        await db.save("things", "a", {"n": 2}, 0)


@pytest.mark.asyncio
async def test_stale_version_conflicts(db):
    await db.save("things", "a", {"n": 1}, 0)
    assert await db.save("things", "a", {"n": 2}, 1) == 2
    with pytest.raises(PersistenceConflict):
        await db.save("things", "a", {"n": 3}, 1)
    body, version = await db.get("things", "a")
    assert body == {"n": 2}
    assert version == 2


@pytest.mark.asyncio
async def test_concurrent_writers_one_wins(db):
    await db.save("things", "a", {"n": 0}, 0)
    results = await asyncio.gather(
        db.save("things", "a", {"n": 1}, 1),
        db.save("things", "a", {"n": 2}, 1),
        return_exceptions=True,
    )
    assert sorted(type(r).__name__ for r in results) == ["PersistenceConflict", "int"]


@pytest.mark.asyncio
async def test_find_by_field(db):
    await db.save("convs", "c1", {"user_id": "u1", "title": "One"}, 0)
    await db.save("convs", "c2", {"user_id": "u2", "title": "Two"}, 0)
    await db.save("convs", "c3", {"user_id": "u1", "title": "Three"}, 0)
    found = await db.find("convs", user_id="u1")
    assert sorted(body["title"] for body, _ in found) == ["One", "Three"]
    assert await db.list_ids("convs") == ["c1", "c2", "c3"]


@pytest.mark.asyncio
async def test_find_rejects_bad_field(db):
    with pytest.raises(DatabaseError):
        await db.find("convs", **{"user_id') OR 1=1 --": "x"})


@pytest.mark.asyncio
async def test_update_field_bumps_version(db):
    await db.save("convs", "c1", {"user_id": "u1", "pinned": False}, 0)
    assert await db.update_field("convs", "c1", "pinned", True)
    body, version = await db.get("convs", "c1")
    assert body["pinned"] is True
    assert version == 2
    assert not await db.update_field("convs", "missing", "pinned", True)


@pytest.mark.asyncio
async def test_delete(db):
    await db.save("things", "a", {}, 0)
    assert await db.delete("things", "a")
    assert not await db.delete("things", "a")


@pytest.mark.asyncio
async def test_requires_initialize(tmp_path):
    store = DocumentStore(tmp_path / "never.db")
    with pytest.raises(DatabaseError):
        await store.get("things", "a")
