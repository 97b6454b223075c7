"""Live views over realtime channels."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from ondeck.errors import ConnectivityError
from ondeck.models.cache_models import FetchResult
from ondeck.models.player import Player
from ondeck.realtime import ChangeEvent, LiveView, Snapshot

ROWS = [
    {"id": "p2", "team_id": "t1", "name": "blake"},
    {"id": "p1", "team_id": "t1", "name": "Avery"},
]


async def next_snapshot(feed) -> Snapshot:
    return await asyncio.wait_for(feed.__anext__(), timeout=1)


def names(snapshot: Snapshot) -> list[str]:
    return [player.name for player in snapshot.items]


@pytest.mark.asyncio
async def test_subscribe_primes_and_orders(players, supabase):
    supabase.script("players", ROWS)

    feed = await players.watch_players("t1")
    snapshot = await next_snapshot(feed)

    assert names(snapshot) == ["Avery", "blake"]
    (channel,) = supabase.channels
    assert channel.topic == "players:team_id=t1"
    binding = channel.bindings[0]
    assert (binding["event"], binding["table"], binding["filter"]) == ("*", "players", "team_id=eq.t1")
    await feed.aclose()


@pytest.mark.asyncio
async def test_changes_are_applied_by_primary_key(players, supabase):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    await next_snapshot(feed)
    channel = supabase.channels[0]

    channel.emit("INSERT", new={"id": "p3", "team_id": "t1", "name": "Casey"})
    assert names(await next_snapshot(feed)) == ["Avery", "blake", "Casey"]

    channel.emit("UPDATE", new={"id": "p2", "team_id": "t1", "name": "Drew"})
    assert names(await next_snapshot(feed)) == ["Avery", "Casey", "Drew"]

    channel.emit("DELETE", old={"id": "p1"})
    assert names(await next_snapshot(feed)) == ["Casey", "Drew"]
    await feed.aclose()


@pytest.mark.asyncio
async def test_undelivered_snapshot_is_superseded(players, supabase):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    first = await next_snapshot(feed)
    channel = supabase.channels[0]

    channel.emit("INSERT", new={"id": "p3", "team_id": "t1", "name": "Casey"})
    channel.emit("INSERT", new={"id": "p4", "team_id": "t1", "name": "Emery"})
    latest = await next_snapshot(feed)

    assert names(latest) == ["Avery", "blake", "Casey", "Emery"]
    assert latest.sequence == first.sequence + 2
    await feed.aclose()


@pytest.mark.asyncio
async def test_events_during_prime_are_replayed(players, supabase):
    def prime_with_concurrent_insert(query):
        supabase.channels[0].emit("INSERT", new={"id": "p9", "team_id": "t1", "name": "Zoe"})
        supabase.channels[0].emit("DELETE", old={"id": "p2"})
        return ROWS

    supabase.handle("players", prime_with_concurrent_insert)

    feed = await players.watch_players("t1")

    assert names(await next_snapshot(feed)) == ["Avery", "Zoe"]
    await feed.aclose()


@pytest.mark.asyncio
async def test_subscribers_share_one_channel(players, supabase):
    supabase.script("players", ROWS)
    first = await players.watch_players("t1")
    second = await players.watch_players("t1")

    assert len(supabase.channels) == 1
    assert names(await next_snapshot(second)) == ["Avery", "blake"]

    await first.aclose()
    assert supabase.removed_channels == []
    await second.aclose()
    assert len(supabase.removed_channels) == 1
    assert players._live == {}


@pytest.mark.asyncio
async def test_closed_feed_stops_delivery(players, supabase):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    await next_snapshot(feed)
    channel = supabase.channels[0]

    await feed.aclose()
    channel.emit("INSERT", new={"id": "p3", "team_id": "t1", "name": "Casey"})

    with pytest.raises(StopAsyncIteration):
        await next_snapshot(feed)


@pytest.mark.asyncio
async def test_resubscribe_triggers_reprime(players, supabase):
    supabase.script("players", ROWS, [{"id": "p5", "team_id": "t1", "name": "Fin"}])
    feed = await players.watch_players("t1")
    await next_snapshot(feed)

    supabase.channels[0].set_status("SUBSCRIBED")

    assert names(await next_snapshot(feed)) == ["Fin"]
    await feed.aclose()


@pytest.mark.asyncio
async def test_channel_error_is_logged_not_fatal(players, supabase, caplog):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    await next_snapshot(feed)

    with caplog.at_level(logging.WARNING):
        supabase.channels[0].set_status("CHANNEL_ERROR", RuntimeError("socket closed"))

    assert any(getattr(record, "event", None) == "REALTIME_CHANNEL_ERROR" for record in caplog.records)
    assert not feed.closed
    await feed.aclose()


@pytest.mark.asyncio
async def test_failed_prime_raises_and_releases_channel(players, supabase):
    supabase.script("players", httpx.ConnectError("down"))

    with pytest.raises(ConnectivityError):
        await players.watch_players("t1")
    assert len(supabase.removed_channels) == 1
    assert players._live == {}


@pytest.mark.asyncio
async def test_close_live_queries_ends_feeds(players, rosters, supabase):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    await next_snapshot(feed)

    await players.close_live_queries()

    assert feed.closed
    with pytest.raises(StopAsyncIteration):
        await next_snapshot(feed)


@pytest.mark.asyncio
async def test_roster_feed_is_newest_first(rosters, supabase):
    supabase.script("game_rosters", [
        {"id": "r1", "team_id": "t1", "title": "Old", "created_at": "2026-03-01T10:00:00Z"},
        {"id": "r2", "team_id": "t1", "title": "New", "created_at": "2026-03-08T10:00:00Z"},
        {"id": "r3", "team_id": "t1", "title": "Draft"},
    ])

    async with await rosters.watch_game_rosters("t1") as feed:
        snapshot = await next_snapshot(feed)

    assert [roster.title for roster in snapshot.items] == ["New", "Old", "Draft"]


@pytest.mark.asyncio
async def test_as_of_never_decreases(players, supabase):
    supabase.script("players", ROWS)
    feed = await players.watch_players("t1")
    primed = await next_snapshot(feed)

    supabase.channels[0].emit(
        "INSERT", new={"id": "p3", "team_id": "t1", "name": "Casey"},
        commit_timestamp="2001-01-01T00:00:00Z",
    )
    later = await next_snapshot(feed)

    assert later.as_of >= primed.as_of
    await feed.aclose()


# ---------------------------------------------------------------------------
# Payload decoding
# ---------------------------------------------------------------------------

def test_change_event_flat_payload():
    event = ChangeEvent.from_payload({
        "eventType": "update",
        "new": {"id": "p1"},
        "old": {"id": "p1"},
        "commit_timestamp": "2026-03-01T12:00:00",
    })

    assert event.type == "UPDATE"
    assert event.record == {"id": "p1"}
    assert event.commit_timestamp == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


def test_change_event_bad_timestamp_is_ignored():
    event = ChangeEvent.from_payload({"data": {"type": "DELETE", "commit_timestamp": "soon"}})

    assert event.type == "DELETE"
    assert event.commit_timestamp is None


# ---------------------------------------------------------------------------
# View reconciliation
# ---------------------------------------------------------------------------

T0 = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)


def _players(*names_: str) -> list[Player]:
    return [Player(id=name, team_id="t1", name=name) for name in names_]


def test_cached_result_fills_empty_view():
    view: LiveView[Player] = LiveView()

    assert view.apply_fetch(FetchResult(items=_players("A"), from_cache=True, cached_at=T0), T0)
    assert view.is_stale and view.has_data


def test_cached_result_never_replaces_server_data():
    view: LiveView[Player] = LiveView()
    view.apply_snapshot(Snapshot(items=tuple(_players("Live")), as_of=T0))

    later_cache = FetchResult(
        items=_players("Cached"), from_cache=True, cached_at=T0 + timedelta(hours=1),
    )
    assert not view.apply_fetch(later_cache, T0 + timedelta(hours=1))
    assert [player.name for player in view.items] == ["Live"]


def test_older_snapshot_is_dropped_and_server_replaces_stale():
    view: LiveView[Player] = LiveView()
    view.apply_fetch(
        FetchResult(items=_players("Cached"), from_cache=True, cached_at=T0 + timedelta(days=1)),
        T0,
    )

    assert view.apply_snapshot(Snapshot(items=tuple(_players("Server")), as_of=T0))
    assert not view.is_stale
    assert not view.apply_snapshot(Snapshot(items=(), as_of=T0 - timedelta(seconds=1)))
    assert [player.name for player in view.items] == ["Server"]
