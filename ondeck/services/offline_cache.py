"""
Offline Envelope Cache.

TTL-aware persistence of fetched collections so the roster stays
readable without a network.  Each entry is a ``CacheEnvelope`` serialised
to JSON and stored under ``<prefix><logical key>`` in a ``KeyValueStore``.

The cache is strictly best-effort:

- write failures are logged and swallowed (a miss is a degraded state,
  never a fatal one);
- unreadable entries are deleted on sight and reported as a miss;
- medium failures on any read path are reported as a miss.

Nothing in this module knows what a player or a roster is.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from ondeck.logger import StructuredLogger
from ondeck.models.cache_models import CacheEnvelope
from ondeck.services.base_service import BaseService
from ondeck.storage.kv_store import CorruptValueError, KeyValueStore
from ondeck.utils.clock import Clock, SystemClock

# Failures of the storage medium itself.
_STORAGE_ERRORS: tuple[type[BaseException], ...] = (OSError, sqlite3.Error)


class OfflineCacheService(BaseService):
    """Envelope cache over a key/value medium.

    Parameters
    ----------
    store:
        The persistent medium.  ``None`` disables the cache.
    logger:
        A ``StructuredLogger`` instance.
    prefix:
        Namespace prepended to every logical key.  ``clear_all`` and
        ``evict_expired`` only ever touch keys under this prefix.
    default_ttl_minutes:
        TTL applied when a write does not pass one, and when an entry
        carries none.  ``0`` never expires.
    enabled:
        ``False`` on platforms without a secure medium: every operation
        becomes a no-op and every read a miss.
    clock:
        Time source for envelope timestamps and freshness checks.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        logger: StructuredLogger,
        *,
        prefix: str = "aod_cache_",
        default_ttl_minutes: int = 60,
        enabled: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(logger)
        if default_ttl_minutes < 0:
            raise ValueError("default_ttl_minutes must be >= 0")
        self._store: Optional[KeyValueStore] = store
        self._prefix: str = prefix
        self._default_ttl: int = default_ttl_minutes
        self._enabled: bool = enabled and store is not None
        self._clock: Clock = clock or SystemClock()
        self._background: set[asyncio.Task[int]] = set()
        self._epoch: int = 0

    # ------------------------------------------------------------------
    # Key builders
    # ------------------------------------------------------------------

    @staticmethod
    def players_key(team_id: str) -> str:
        return f"players_{team_id}"

    @staticmethod
    def game_rosters_key(team_id: str) -> str:
        return f"game_rosters_{team_id}"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_enabled(self) -> bool:
        """``False`` when disabled by configuration or no medium exists."""
        return self._enabled

    @property
    def default_ttl_minutes(self) -> int:
        return self._default_ttl

    @property
    def epoch(self) -> int:
        """Session epoch; advanced by every ``clear_all``.

        A reader captures it before going to the network and hands it to
        ``write`` so rows fetched for a signed-out account are not stored.
        """
        return self._epoch

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def write(
        self,
        key: str,
        records: list[dict[str, Any]],
        ttl_minutes: Optional[int] = None,
        *,
        epoch: Optional[int] = None,
    ) -> None:
        """Replace the entry at *key* with a fresh envelope around *records*.

        Never raises: serialisation and storage failures are logged and the
        previous entry (if any) is left as it was.

        When *epoch* is given and ``clear_all`` has run since it was read,
        the write is dropped; one that lands while a clear is running is
        deleted again.
        """
        if not self._enabled:
            return
        if self._is_stale_epoch(key, epoch):
            return
        ttl = self._default_ttl if ttl_minutes is None else ttl_minutes
        try:
            envelope = CacheEnvelope(
                written_at=self._clock.now(),
                ttl_minutes=ttl,
                data=records,
            )
            payload = envelope.to_json()
        except (ValidationError, PydanticSerializationError) as exc:
            self._logger.warning(
                "Cache write skipped for %s: %s", key, exc,
                extra={"event": "CACHE_WRITE_INVALID"},
            )
            return

        try:
            await self._store.set(self._full_key(key), payload)
            if self._is_stale_epoch(key, epoch):
                await self._delete_quietly(self._full_key(key))
                return
            self._logger.debug("Cached %d record(s) under %s.", len(records), key)
        except _STORAGE_ERRORS as exc:
            self._logger.warning(
                "Cache write failed for %s: %s", key, exc,
                extra={"event": "CACHE_WRITE_FAILED"},
            )

    async def read_envelope(
        self,
        key: str,
        max_age_minutes: Optional[int] = None,
    ) -> Optional[CacheEnvelope]:
        """Return the fresh envelope at *key*, or ``None``.

        ``None`` covers: disabled cache, no entry, an unreadable entry
        (deleted as a side effect), an expired entry and a medium failure.

        Parameters
        ----------
        key:
            Logical key (without prefix).
        max_age_minutes:
            Overrides the TTL stored in the envelope for this read only.
            Must be >= 0; ``0`` accepts an entry of any age.

        Raises
        ------
        ValueError
            *max_age_minutes* is negative.
        """
        if max_age_minutes is not None and max_age_minutes < 0:
            raise ValueError("max_age_minutes must be >= 0")
        if not self._enabled:
            return None
        envelope = await self._load(self._full_key(key))
        if envelope is None:
            return None
        if not envelope.is_fresh(self._clock.now(), self._default_ttl, max_age_minutes):
            self._logger.debug("Cache entry %s is expired.", key)
            return None
        return envelope

    async def read(
        self,
        key: str,
        max_age_minutes: Optional[int] = None,
    ) -> Optional[list[dict[str, Any]]]:
        """Return the cached records at *key*, or ``None`` (see ``read_envelope``)."""
        envelope = await self.read_envelope(key, max_age_minutes)
        return None if envelope is None else list(envelope.data)

    async def last_updated(self, key: str) -> Optional[datetime]:
        """Write time of the entry at *key*, regardless of freshness."""
        if not self._enabled:
            return None
        envelope = await self._load(self._full_key(key))
        return None if envelope is None else envelope.written_at

    async def invalidate(self, key: str) -> None:
        """Delete the entry at *key*.  A missing key is a no-op."""
        if not self._enabled:
            return
        await self._delete_quietly(self._full_key(key))

    async def clear_all(self) -> None:
        """Delete every entry under the prefix.

        Keys of other owners sharing the medium are left alone.  Writes
        tagged with an earlier epoch are discarded from here on.
        """
        self._epoch += 1
        if not self._enabled:
            return
        keys = await self._own_keys()
        for full_key in keys:
            await self._delete_quietly(full_key)
        self._logger.info(
            "Offline cache cleared (%d entries).", len(keys),
            extra={"event": "CACHE_CLEARED"},
        )

    async def evict_expired(self) -> int:
        """Delete every expired or unreadable entry under the prefix.

        Returns
        -------
        int
            Number of entries removed.
        """
        if not self._enabled:
            return 0
        now = self._clock.now()
        removed = 0
        for full_key in await self._own_keys():
            envelope, dropped = await self._load_entry(full_key)
            if dropped:
                removed += 1
            elif envelope is not None and not envelope.is_fresh(now, self._default_ttl):
                await self._delete_quietly(full_key)
                removed += 1
        if removed:
            self._logger.info(
                "Evicted %d expired cache entr%s.", removed, "y" if removed == 1 else "ies",
                extra={"event": "CACHE_EVICTED"},
            )
        return removed

    def start_background_eviction(self) -> Optional[asyncio.Task[int]]:
        """Schedule ``evict_expired`` on the running loop without awaiting it.

        Returns the task (``None`` when the cache is disabled).  Failures of
        the task are logged.
        """
        if not self._enabled:
            return None
        task = asyncio.get_running_loop().create_task(
            self.evict_expired(), name="ondeck-cache-eviction",
        )
        self._background.add(task)
        task.add_done_callback(self._on_eviction_done)
        return task

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _full_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _is_stale_epoch(self, key: str, epoch: Optional[int]) -> bool:
        if epoch is None or epoch == self._epoch:
            return False
        self._logger.info(
            "Dropped cache write for %s fetched before the cache was cleared.", key,
            extra={"event": "CACHE_WRITE_STALE"},
        )
        return True

    def _on_eviction_done(self, task: asyncio.Task[int]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "Background cache eviction failed: %s", exc,
                exc_info=exc,
            )

    async def _load(self, full_key: str) -> Optional[CacheEnvelope]:
        envelope, _ = await self._load_entry(full_key)
        return envelope

    async def _load_entry(self, full_key: str) -> tuple[Optional[CacheEnvelope], bool]:
        """Read and parse one entry; delete it when it cannot be parsed.

        Returns ``(envelope, dropped)`` where *dropped* is ``True`` when the
        entry was corrupt and has been deleted.
        """
        try:
            raw = await self._store.get(full_key)
        except CorruptValueError as exc:
            await self._drop_corrupt(full_key, exc)
            return None, True
        except _STORAGE_ERRORS as exc:
            self._logger.warning(
                "Cache read failed for %s: %s", full_key, exc,
                extra={"event": "CACHE_READ_FAILED"},
            )
            return None, False

        if raw is None:
            return None, False
        try:
            return CacheEnvelope.model_validate_json(raw), False
        except ValidationError as exc:
            await self._drop_corrupt(full_key, exc)
            return None, True

    async def _drop_corrupt(self, full_key: str, exc: Exception) -> None:
        self._logger.warning(
            "Discarding corrupt cache entry %s: %s", full_key, exc,
            extra={"event": "CACHE_CORRUPT_ENTRY"},
        )
        await self._delete_quietly(full_key)

    async def _delete_quietly(self, full_key: str) -> None:
        try:
            await self._store.delete(full_key)
        except _STORAGE_ERRORS as exc:
            self._logger.warning(
                "Cache delete failed for %s: %s", full_key, exc,
                extra={"event": "CACHE_DELETE_FAILED"},
            )

    async def _own_keys(self) -> list[str]:
        try:
            keys = await self._store.get_all_keys()
        except _STORAGE_ERRORS as exc:
            self._logger.warning(
                "Cache key listing failed: %s", exc,
                extra={"event": "CACHE_READ_FAILED"},
            )
            return []
        return [key for key in keys if key.startswith(self._prefix)]
