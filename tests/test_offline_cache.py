"""Envelope cache store: freshness, corruption handling, prefix isolation."""

from __future__ import annotations

import json
import sqlite3

import pytest

from ondeck.services.offline_cache import OfflineCacheService
from tests.fakes import MemoryKeyValueStore

ROWS = [{"id": "p1", "name": "Avery"}, {"id": "p2", "name": "Blake"}]


@pytest.mark.asyncio
async def test_write_then_read_returns_records(cache, store):
    await cache.write("players_t1", ROWS)

    assert await cache.read("players_t1") == ROWS
    stored = json.loads(store.data["aod_cache_players_t1"])
    assert set(stored) == {"writtenAt", "ttlMinutes", "data"}
    assert stored["ttlMinutes"] == 60


@pytest.mark.asyncio
async def test_entry_is_fresh_up_to_its_ttl_and_expired_after(cache, clock):
    await cache.write("players_t1", ROWS, ttl_minutes=10)

    clock.advance(minutes=10)
    assert await cache.read("players_t1") == ROWS

    clock.advance(seconds=1)
    assert await cache.read("players_t1") is None


@pytest.mark.asyncio
async def test_zero_ttl_never_expires(cache, clock):
    await cache.write("players_t1", ROWS, ttl_minutes=0)
    clock.advance(days=400)

    assert await cache.read("players_t1") == ROWS


@pytest.mark.asyncio
async def test_max_age_overrides_stored_ttl(cache, clock):
    await cache.write("players_t1", ROWS, ttl_minutes=0)
    clock.advance(minutes=6)

    assert await cache.read("players_t1", max_age_minutes=5) is None
    assert await cache.read("players_t1", max_age_minutes=10) == ROWS


@pytest.mark.asyncio
async def test_expired_entry_stays_on_disk_until_eviction(cache, clock, store):
    await cache.write("players_t1", ROWS, ttl_minutes=1)
    clock.advance(minutes=5)

    assert await cache.read("players_t1") is None
    assert "aod_cache_players_t1" in store.data
    assert await cache.last_updated("players_t1") is not None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        "not json at all",
        json.dumps({"data": []}),
        json.dumps({"writtenAt": "2026-03-01T12:00:00+00:00", "ttlMinutes": -5, "data": []}),
        json.dumps({"writtenAt": "2026-03-01T12:00:00+00:00", "ttlMinutes": 5, "data": "x"}),
    ],
)
async def test_malformed_entry_is_a_miss_and_deleted(cache, store, raw):
    store.data["aod_cache_players_t1"] = raw

    assert await cache.read("players_t1") is None
    assert "aod_cache_players_t1" not in store.data


@pytest.mark.asyncio
async def test_undecryptable_entry_is_a_miss_and_deleted(cache, store):
    store.corrupt.add("aod_cache_players_t1")

    assert await cache.read("players_t1") is None
    assert "aod_cache_players_t1" not in store.corrupt


@pytest.mark.asyncio
async def test_storage_failure_is_absorbed(cache, store):
    await cache.write("players_t1", ROWS)
    store.fail_with = sqlite3.OperationalError("disk I/O error")

    assert await cache.read("players_t1") is None
    await cache.write("players_t1", ROWS)
    await cache.invalidate("players_t1")
    await cache.clear_all()
    assert await cache.evict_expired() == 0

    store.fail_with = None
    assert await cache.read("players_t1") == ROWS


@pytest.mark.asyncio
async def test_unserialisable_records_leave_previous_entry(cache):
    await cache.write("players_t1", ROWS)
    await cache.write("players_t1", [{"id": object()}])

    assert await cache.read("players_t1") == ROWS


@pytest.mark.asyncio
async def test_clear_all_only_touches_own_prefix(cache, store):
    store.data["session_token"] = "keep-me"
    await cache.write("players_t1", ROWS)
    await cache.write("game_rosters_t1", [])

    await cache.clear_all()

    assert store.data == {"session_token": "keep-me"}


@pytest.mark.asyncio
async def test_invalidate_missing_key_is_a_noop(cache):
    await cache.invalidate("players_unknown")


@pytest.mark.asyncio
async def test_evict_expired_removes_expired_and_corrupt_only(cache, clock, store):
    await cache.write("players_old", ROWS, ttl_minutes=1)
    await cache.write("players_forever", ROWS, ttl_minutes=0)
    await cache.write("players_new", ROWS, ttl_minutes=120)
    store.data["aod_cache_garbage"] = "{broken"
    store.data["other_owner"] = "{broken"
    clock.advance(minutes=30)

    removed = await cache.evict_expired()

    assert removed == 2
    assert sorted(store.data) == [
        "aod_cache_players_forever",
        "aod_cache_players_new",
        "other_owner",
    ]


@pytest.mark.asyncio
async def test_entry_without_ttl_uses_default(cache, clock, store):
    store.data["aod_cache_players_t1"] = json.dumps(
        {"writtenAt": clock.now().isoformat(), "data": ROWS}
    )
    clock.advance(minutes=59)
    assert await cache.read("players_t1") == ROWS

    clock.advance(minutes=2)
    assert await cache.read("players_t1") is None


@pytest.mark.asyncio
async def test_background_eviction_runs_without_blocking(cache, clock, store):
    await cache.write("players_old", ROWS, ttl_minutes=1)
    clock.advance(minutes=2)

    task = cache.start_background_eviction()
    assert task is not None
    assert await task == 1
    assert store.data == {}


@pytest.mark.asyncio
async def test_disabled_cache_is_a_noop(logger, clock):
    store = MemoryKeyValueStore()
    cache = OfflineCacheService(store, logger, enabled=False, clock=clock)

    await cache.write("players_t1", ROWS)
    assert store.data == {}
    assert await cache.read("players_t1") is None
    assert await cache.evict_expired() == 0
    assert cache.start_background_eviction() is None
    assert not cache.is_enabled


def test_negative_default_ttl_is_rejected(logger, store):
    with pytest.raises(ValueError):
        OfflineCacheService(store, logger, default_ttl_minutes=-1)


def test_key_builders():
    assert OfflineCacheService.players_key("t1") == "players_t1"
    assert OfflineCacheService.game_rosters_key("t1") == "game_rosters_t1"


@pytest.mark.asyncio
async def test_write_from_before_clear_is_dropped(cache):
    epoch = cache.epoch
    await cache.clear_all()

    await cache.write("players_t1", [{"id": "p1"}], epoch=epoch)
    assert await cache.read("players_t1") is None

    await cache.write("players_t1", [{"id": "p2"}], epoch=cache.epoch)
    assert await cache.read("players_t1") == [{"id": "p2"}]


@pytest.mark.asyncio
async def test_write_landing_while_clear_runs_is_removed(cache, store):
    epoch = cache.epoch
    store_set = store.set

    async def set_during_clear(key: str, value: str) -> None:
        await store_set(key, value)
        await cache.clear_all()
        store.data[key] = value

    store.set = set_during_clear
    await cache.write("players_t1", [{"id": "p1"}], epoch=epoch)

    assert "aod_cache_players_t1" not in store.data


@pytest.mark.asyncio
async def test_negative_max_age_is_rejected(cache):
    await cache.write("players_t1", [{"id": "p1"}], ttl_minutes=0)

    with pytest.raises(ValueError):
        await cache.read("players_t1", max_age_minutes=-1)
    assert await cache.read("players_t1", max_age_minutes=0) == [{"id": "p1"}]
