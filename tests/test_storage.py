"""Encrypted SQLite key/value medium and the local schema."""

from __future__ import annotations

import sqlite3

import pytest

from ondeck.database import DatabaseManager
from ondeck.errors import ConnectivityError
from ondeck.schema import CURRENT_SCHEMA_VERSION, initialize_schema
from ondeck.services.offline_cache import OfflineCacheService
from ondeck.storage import CorruptValueError, SecureKeyValueStore


@pytest.fixture
def local_db(offline_db, logger):
    initialize_schema(offline_db.sqlite, logger)
    return offline_db


@pytest.fixture
def secure_store(local_db, logger, tmp_path):
    return SecureKeyValueStore(
        db=local_db, logger=logger, salt_path=tmp_path / "salt", kdf_iterations=1_000,
    )


def test_schema_is_idempotent(offline_db, logger):
    initialize_schema(offline_db.sqlite, logger)
    initialize_schema(offline_db.sqlite, logger)

    version = offline_db.sqlite.execute(
        "SELECT version FROM schema_version WHERE id = 1"
    ).fetchone()[0]
    assert version == CURRENT_SCHEMA_VERSION
    tables = {
        row[0] for row in offline_db.sqlite.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        )
    }
    assert {"schema_version", "secure_kv"} <= tables


@pytest.mark.asyncio
async def test_values_round_trip_encrypted(secure_store, local_db):
    await secure_store.set("aod_cache_players_t1", '{"roster": "Avery"}')

    assert await secure_store.get("aod_cache_players_t1") == '{"roster": "Avery"}'
    raw = local_db.sqlite.execute(
        "SELECT ciphertext FROM secure_kv WHERE key = ?", ("aod_cache_players_t1",)
    ).fetchone()[0]
    assert b"Avery" not in raw


@pytest.mark.asyncio
async def test_overwrite_delete_and_list(secure_store):
    await secure_store.set("a", "1")
    await secure_store.set("a", "2")
    await secure_store.set("b", "3")

    assert await secure_store.get("a") == "2"
    assert sorted(await secure_store.get_all_keys()) == ["a", "b"]

    await secure_store.delete("a")
    await secure_store.delete("missing")
    assert await secure_store.get("a") is None
    assert await secure_store.get_all_keys() == ["b"]


@pytest.mark.asyncio
async def test_tampered_value_raises_corrupt(secure_store, local_db):
    await secure_store.set("k", "secret")
    with local_db.write_lock:
        local_db.sqlite.execute("UPDATE secure_kv SET tag = ? WHERE key = 'k'", (b"\x00" * 16,))
        local_db.sqlite.commit()

    with pytest.raises(CorruptValueError):
        await secure_store.get("k")


@pytest.mark.asyncio
async def test_new_salt_makes_old_entries_corrupt(local_db, logger, tmp_path):
    first = SecureKeyValueStore(local_db, logger, tmp_path / "salt-a", kdf_iterations=1_000)
    await first.set("k", "secret")
    second = SecureKeyValueStore(local_db, logger, tmp_path / "salt-b", kdf_iterations=1_000)

    with pytest.raises(CorruptValueError):
        await second.get("k")


@pytest.mark.asyncio
async def test_cache_drops_undecryptable_entry(local_db, logger, tmp_path, clock):
    writer = SecureKeyValueStore(local_db, logger, tmp_path / "salt-a", kdf_iterations=1_000)
    await OfflineCacheService(writer, logger, clock=clock).write("players_t1", [{"id": "p1"}])

    reader = SecureKeyValueStore(local_db, logger, tmp_path / "salt-b", kdf_iterations=1_000)
    cache = OfflineCacheService(reader, logger, clock=clock)

    assert await cache.read("players_t1") is None
    assert await reader.get_all_keys() == []


def test_salt_is_created_once(secure_store, tmp_path):
    first = secure_store._get_or_create_salt()
    second = secure_store._get_or_create_salt()

    assert first == second
    assert len(first) == 32
    assert (tmp_path / "salt").read_bytes() == first


def test_offline_manager_raises_connectivity(offline_db):
    assert not offline_db.is_online
    with pytest.raises(ConnectivityError):
        offline_db.supabase


@pytest.mark.asyncio
async def test_close_is_idempotent(tmp_path, logger):
    manager = DatabaseManager(sqlite_path=tmp_path / "x.db", logger=logger)
    await manager.aclose()
    manager.close()

    with pytest.raises(sqlite3.ProgrammingError):
        manager.sqlite.execute("SELECT 1")


@pytest.mark.asyncio
async def test_create_without_credentials_runs_offline(tmp_path, logger):
    manager = await DatabaseManager.create("", "", tmp_path / "y.db", logger)
    try:
        assert not manager.is_online
    finally:
        manager.close()
