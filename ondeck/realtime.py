"""
Realtime Live Views.

Keeps an in-memory copy of one scoped collection (e.g. the players of a
team) in sync with the server and hands full, ordered snapshots to
subscribers after every change.

Flow::

    subscribe() ─► open channel (postgres changes, filter col=eq.value)
                ─► prime with a full fetch
                ─► publish snapshot
    change event ─► upsert / delete by primary key ─► publish snapshot

Feeds are level-triggered: every snapshot is the whole collection, so a
subscriber that misses intermediate snapshots loses nothing.  Each
subscriber has a single-slot mailbox; an undelivered snapshot is replaced
by a newer one.

Ordering policy between sources: every snapshot carries an ``as_of``
timestamp (event commit time or fetch time) that never decreases within a
feed.  ``LiveView`` keeps the most recent state and never lets a
cache-fallback result replace live data.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from ondeck.database import DatabaseManager
from ondeck.errors import classify_error
from ondeck.logger import StructuredLogger
from ondeck.models.cache_models import FetchResult
from ondeck.utils.clock import Clock, SystemClock

T = TypeVar("T", bound=BaseModel)

_INSERT = "INSERT"
_UPDATE = "UPDATE"
_DELETE = "DELETE"


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    """The full ordered collection at one point in time."""

    items: tuple[T, ...]
    as_of: datetime
    sequence: int = 0

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded postgres change notification."""

    type: str
    record: dict[str, Any] = field(default_factory=dict)
    old_record: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Decode either payload shape the realtime client delivers.

        ``{"data": {"type", "record", "old_record", "commit_timestamp"}}``
        or the flattened ``{"eventType", "new", "old", "commit_timestamp"}``.
        """
        data = payload.get("data")
        if isinstance(data, dict):
            kind = data.get("type") or data.get("eventType") or ""
            record = data.get("record") or {}
            old = data.get("old_record") or {}
            stamp = data.get("commit_timestamp")
        else:
            kind = payload.get("eventType") or payload.get("type") or ""
            record = payload.get("new") or payload.get("record") or {}
            old = payload.get("old") or payload.get("old_record") or {}
            stamp = payload.get("commit_timestamp")
        return cls(
            type=str(kind).upper(),
            record=dict(record),
            old_record=dict(old),
            commit_timestamp=_parse_timestamp(stamp),
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _state_name(state: Any) -> str:
    return str(getattr(state, "value", state)).upper()


# ---------------------------------------------------------------------------
# Subscriber side
# ---------------------------------------------------------------------------

class LiveSubscription(Generic[T]):
    """Async iterator over the snapshots of one ``LiveQuery``.

    Usage::

        async with await players.watch_players(team_id) as feed:
            async for snapshot in feed:
                render(snapshot.items)
    """

    def __init__(self, on_close: Callable[["LiveSubscription[T]"], Awaitable[None]]) -> None:
        self._on_close = on_close
        self._pending: Optional[Snapshot[T]] = None
        self._latest: Optional[Snapshot[T]] = None
        self._wakeup: asyncio.Event = asyncio.Event()
        self._closed: bool = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latest(self) -> Optional[Snapshot[T]]:
        """Most recent snapshot offered to this subscriber."""
        return self._latest

    def offer(self, snapshot: Snapshot[T]) -> None:
        """Place *snapshot* in the mailbox, superseding an undelivered one.

        Snapshots older than the last one offered are ignored.
        """
        if self._closed:
            return
        if self._latest is not None and snapshot.as_of < self._latest.as_of:
            return
        self._latest = snapshot
        self._pending = snapshot
        self._wakeup.set()

    def terminate(self, error: Optional[BaseException] = None) -> None:
        """End delivery without notifying the owner (owner-side close)."""
        if self._closed:
            return
        self._closed = True
        self._pending = None
        self._error = error
        self._wakeup.set()

    async def aclose(self) -> None:
        """Stop delivery and release this subscriber's share of the channel."""
        if self._closed:
            return
        self.terminate()
        await self._on_close(self)

    def __aiter__(self) -> "LiveSubscription[T]":
        return self

    async def __anext__(self) -> Snapshot[T]:
        while True:
            if self._pending is not None:
                snapshot, self._pending = self._pending, None
                return snapshot
            if self._closed:
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    async def __aenter__(self) -> "LiveSubscription[T]":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


# ---------------------------------------------------------------------------
# Channel side
# ---------------------------------------------------------------------------

class LiveQuery(Generic[T]):
    """One realtime channel plus the in-memory rows of a scoped collection.

    Parameters
    ----------
    db:
        ``DatabaseManager`` providing the Supabase client.
    logger:
        A ``StructuredLogger`` instance.
    table:
        Table name in the ``public`` schema.
    scope_column, scope_value:
        Equality filter applied to both the channel and the prime fetch.
    model:
        Pydantic model each row is validated into.
    prime:
        Zero-argument coroutine function returning the full collection
        response (anything with a ``.data`` list).
    sort_key, reverse:
        Ordering of published snapshots.
    on_idle:
        Called after the query closes so the owner can forget it.
    """

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        *,
        table: str,
        scope_column: str,
        scope_value: str,
        model: type[T],
        prime: Callable[[], Awaitable[Any]],
        sort_key: Callable[[T], Any],
        reverse: bool = False,
        primary_key: str = "id",
        clock: Optional[Clock] = None,
        on_idle: Optional[Callable[["LiveQuery[T]"], None]] = None,
    ) -> None:
        self._db = db
        self._logger = logger
        self._table = table
        self._scope_column = scope_column
        self._scope_value = scope_value
        self._model = model
        self._prime_op = prime
        self._sort_key = sort_key
        self._reverse = reverse
        self._pk = primary_key
        self._clock: Clock = clock or SystemClock()
        self._on_idle = on_idle

        self._subscribers: list[LiveSubscription[T]] = []
        self._rows: dict[str, dict[str, Any]] = {}
        self._channel: Any = None
        self._started: bool = False
        self._closed: bool = False
        self._priming: bool = False
        self._buffer: list[ChangeEvent] = []
        self._subscribed_once: bool = False
        self._as_of: Optional[datetime] = None
        self._sequence: int = 0
        self._latest: Optional[Snapshot[T]] = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def topic(self) -> str:
        return f"{self._table}:{self._scope_column}={self._scope_value}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def subscribe(self) -> LiveSubscription[T]:
        """Add a subscriber, opening the channel on first use.

        Raises
        ------
        DataAccessError
            The channel could not be opened or the prime fetch failed.
        """
        if self._closed:
            raise RuntimeError(f"Live query {self.topic} is closed.")
        subscription: LiveSubscription[T] = LiveSubscription(self._release)
        self._subscribers.append(subscription)

        if not self._started:
            self._started = True
            try:
                await self._open_channel()
                await self._prime()
            except Exception as exc:
                error = classify_error(exc, f"watch ({self._table})")
                await self.close(error)
                raise error from exc
        elif self._latest is not None:
            subscription.offer(self._latest)
        return subscription

    async def close(self, error: Optional[BaseException] = None) -> None:
        """Terminate every subscriber and remove the channel."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription.terminate(error)
        self._subscribers.clear()
        for task in list(self._tasks):
            task.cancel()

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await self._db.supabase.remove_channel(channel)
            except Exception as exc:
                self._logger.warning("Failed to remove channel %s: %s", self.topic, exc)
        self._logger.debug("Live query %s closed.", self.topic)
        if self._on_idle is not None:
            self._on_idle(self)

    # ------------------------------------------------------------------
    # Channel plumbing
    # ------------------------------------------------------------------

    async def _open_channel(self) -> None:
        channel = self._db.supabase.channel(self.topic)
        channel.on_postgres_changes(
            "*",
            schema="public",
            table=self._table,
            filter=f"{self._scope_column}=eq.{self._scope_value}",
            callback=self._on_change,
        )
        self._channel = channel
        await channel.subscribe(self._on_status)

    def _on_status(self, state: Any, error: Optional[Exception] = None) -> None:
        name = _state_name(state)
        if name == "SUBSCRIBED":
            if self._subscribed_once and not self._closed:
                # Reconnected: changes may have been missed while down.
                self._logger.info("Channel %s re-subscribed; re-priming.", self.topic)
                task = asyncio.get_running_loop().create_task(self._reprime())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            self._subscribed_once = True
        elif name in ("CHANNEL_ERROR", "TIMED_OUT"):
            self._logger.warning(
                "Channel %s reported %s: %s", self.topic, name, error,
                extra={"event": "REALTIME_CHANNEL_ERROR"},
            )

    def _on_change(self, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        event = ChangeEvent.from_payload(payload)
        if self._priming:
            self._buffer.append(event)
            return
        if self._apply(event):
            self._publish(event.commit_timestamp)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _prime(self) -> None:
        self._priming = True
        self._buffer = []
        try:
            response = await self._prime_op()
        except Exception:
            self._priming = False
            self._buffer = []
            raise
        fetched_at = self._clock.now()
        self._rows = {
            str(row[self._pk]): dict(row)
            for row in (response.data or [])
            if row.get(self._pk) is not None
        }
        buffered, self._buffer = self._buffer, []
        self._priming = False
        for event in buffered:
            self._apply(event)
        self._publish(fetched_at)

    async def _reprime(self) -> None:
        try:
            await self._prime()
        except Exception as exc:
            self._logger.warning(
                "Re-prime of %s failed: %s", self.topic, classify_error(exc),
                extra={"event": "REALTIME_REPRIME_FAILED"},
            )

    def _apply(self, event: ChangeEvent) -> bool:
        if event.type in (_INSERT, _UPDATE):
            key = event.record.get(self._pk)
            if key is None:
                return False
            self._rows[str(key)] = event.record
            return True
        if event.type == _DELETE:
            key = event.old_record.get(self._pk)
            if key is None:
                return False
            return self._rows.pop(str(key), None) is not None
        return False

    def _publish(self, stamp: Optional[datetime]) -> None:
        stamp = stamp or self._clock.now()
        if self._as_of is None or stamp > self._as_of:
            self._as_of = stamp

        items: list[T] = []
        for row in self._rows.values():
            try:
                items.append(self._model.model_validate(row))
            except ValidationError as exc:
                self._logger.warning("Skipping unreadable %s row: %s", self._table, exc)
        items.sort(key=self._sort_key, reverse=self._reverse)

        self._sequence += 1
        snapshot: Snapshot[T] = Snapshot(
            items=tuple(items), as_of=self._as_of, sequence=self._sequence,
        )
        self._latest = snapshot
        for subscription in self._subscribers:
            subscription.offer(snapshot)

    async def _release(self, subscription: LiveSubscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not self._subscribers:
            await self.close()


# ---------------------------------------------------------------------------
# View state
# ---------------------------------------------------------------------------

class LiveView(Generic[T]):
    """Latest known state of a collection fed by fetches and snapshots.

    - a snapshot or fresh fetch older than the current state is ignored;
    - a cache-fallback result only fills a view that has no data yet and
      never replaces server data.
    """

    def __init__(self) -> None:
        self.items: tuple[T, ...] = ()
        self.as_of: Optional[datetime] = None
        self.is_stale: bool = False
        self._has_data: bool = False

    @property
    def has_data(self) -> bool:
        return self._has_data

    def apply_snapshot(self, snapshot: Snapshot[T]) -> bool:
        """Apply *snapshot*; returns ``False`` when it was dropped."""
        return self._accept(snapshot.items, snapshot.as_of)

    def apply_fetch(self, result: FetchResult[T], fetched_at: datetime) -> bool:
        """Apply a coordinated read; returns ``False`` when it was dropped."""
        if result.from_cache:
            if self._has_data:
                return False
            self.items = tuple(result.items)
            self.as_of = result.cached_at
            self.is_stale = True
            self._has_data = True
            return True
        return self._accept(tuple(result.items), fetched_at)

    def _accept(self, items: tuple[T, ...], as_of: datetime) -> bool:
        if not self.is_stale and self.as_of is not None and as_of < self.as_of:
            return False
        self.items = items
        self.as_of = as_of
        self.is_stale = False
        self._has_data = True
        return True
