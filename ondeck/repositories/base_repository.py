"""
Base Repository.

Provides shared infrastructure for all repositories:

- DatabaseManager, offline cache, identity resolver and logger references
- the network-first read with offline-cache fallback
- online-only mutations with cache invalidation
- a registry of realtime live queries per scope
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel, ValidationError
from supabase import AsyncClient

from ondeck.database import DatabaseManager
from ondeck.errors import DataAccessError, NotSignedInError, classify_error, is_connectivity_error
from ondeck.logger import StructuredLogger
from ondeck.models.cache_models import FetchResult
from ondeck.realtime import LiveQuery, LiveSubscription
from ondeck.services.identity import IdentityResolver
from ondeck.services.offline_cache import OfflineCacheService

M = TypeVar("M", bound=BaseModel)

RemoteOp = Callable[[], Awaitable[Any]]


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(
        self,
        db: DatabaseManager,
        cache: OfflineCacheService,
        identity: IdentityResolver,
        logger: StructuredLogger,
    ) -> None:
        self._db = db
        self._cache = cache
        self._identity = identity
        self._logger = logger
        self._live: dict[str, LiveQuery[Any]] = {}

    @property
    def supabase(self) -> AsyncClient:
        """Returns the Supabase client (``ConnectivityError`` when offline)."""
        return self._db.supabase

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch_with_fallback(
        self,
        remote_op: RemoteOp,
        *,
        model: type[M],
        operation_name: str,
        cache_key: Optional[str] = None,
        write_through: bool = True,
        allow_fallback: bool = True,
        select_cached: Optional[Callable[[list[M]], list[M]]] = None,
    ) -> FetchResult[M]:
        """Execute a read with network-first, offline-cache-fallback semantics.

        Execution order:

        1. Await ``remote_op()``.  On success map the rows into *model*,
           write them through to the cache under *cache_key* (the write
           completes before this method returns) and return them.  Rows
           fetched before a sign-out cleared the cache are not written.
        2. If the failure means the server was unreachable and
           *allow_fallback* is set, serve the fresh cache entry under
           *cache_key*, optionally narrowed by *select_cached*, marked
           ``from_cache``.
        3. Otherwise raise the classified error.  Authorization and
           validation failures never fall back, and a cache miss re-raises
           the connectivity error.

        Parameters
        ----------
        remote_op:
            Zero-argument coroutine function performing the query.
        model:
            Pydantic model each row is validated into.
        operation_name:
            Label for log messages and error text, e.g.
            ``"get_players (players)"``.
        cache_key:
            Logical cache key of the collection; ``None`` disables both the
            write-through and the fallback.
        write_through:
            ``False`` for partial reads (pages) that must not replace the
            cached full collection.
        select_cached:
            Narrows the cached collection on fallback (e.g. to one page).
        """
        epoch = self._cache.epoch
        try:
            response = await remote_op()
            items = [model.model_validate(row) for row in (response.data or [])]
        except Exception as exc:
            error = classify_error(exc, operation_name)
            if cache_key is None or not allow_fallback or not is_connectivity_error(error):
                self._logger.warning("%s failed: %s", operation_name, error.message)
                raise error from exc
            self._logger.warning(
                "Server unreachable for %s; trying offline cache.", operation_name,
                extra={"event": "CACHE_FALLBACK"},
            )
            return await self._serve_from_cache(
                cache_key, model, error, select_cached, operation_name,
            )

        if cache_key is not None and write_through:
            await self._cache.write(
                cache_key,
                [item.model_dump(mode="json") for item in items],
                epoch=epoch,
            )
        return FetchResult(items=items)

    async def _serve_from_cache(
        self,
        cache_key: str,
        model: type[M],
        error: DataAccessError,
        select_cached: Optional[Callable[[list[M]], list[M]]],
        operation_name: str,
    ) -> FetchResult[M]:
        envelope = await self._cache.read_envelope(cache_key)
        if envelope is None:
            self._logger.warning("No offline copy for %s.", operation_name)
            raise error from error.original_error
        try:
            items = [model.model_validate(row) for row in envelope.data]
        except ValidationError as exc:
            self._logger.warning(
                "Cached rows for %s no longer validate: %s", operation_name, exc,
            )
            await self._cache.invalidate(cache_key)
            raise error from error.original_error
        if select_cached is not None:
            items = select_cached(items)
        return FetchResult(items=items, from_cache=True, cached_at=envelope.written_at)

    async def _select_one(self, remote_op: RemoteOp, *, operation_name: str) -> Optional[dict[str, Any]]:
        """Run a query expected to match at most one row; ``None`` when none."""
        try:
            response = await remote_op()
        except Exception as exc:
            raise classify_error(exc, operation_name) from exc
        rows = response.data or []
        if isinstance(rows, dict):
            return rows
        return rows[0] if rows else None

    async def _select_rows(self, remote_op: RemoteOp, *, operation_name: str) -> list[dict[str, Any]]:
        """Run an uncached query and return its rows."""
        try:
            response = await remote_op()
        except Exception as exc:
            raise classify_error(exc, operation_name) from exc
        return list(response.data or [])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _run_mutation(
        self,
        op: RemoteOp,
        *,
        operation_name: str,
        invalidate: Iterable[str] = (),
    ) -> Any:
        """Execute a write against the server.

        Writes are online-only: a failure is classified and raised, never
        retried or queued.  On success every key in *invalidate* is
        dropped from the offline cache before returning, so the next read
        cannot serve rows that predate the write.
        """
        try:
            response = await op()
        except Exception as exc:
            error = classify_error(exc, operation_name)
            self._logger.warning("%s failed: %s", operation_name, error.message)
            raise error from exc
        for key in invalidate:
            await self._cache.invalidate(key)
        return response

    async def _require_user_id(self) -> str:
        """The caller's ``users.id``.

        Raises
        ------
        NotSignedInError
            No session, or the session has no profile row.
        """
        identifier = await self._identity.resolve_current()
        if identifier is None:
            raise NotSignedInError("You must be signed in to do that.")
        return identifier

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def _watch(
        self,
        scope_value: str,
        *,
        scope_column: str,
        model: type[M],
        prime: RemoteOp,
        sort_key: Callable[[M], Any],
        reverse: bool = False,
    ) -> LiveSubscription[M]:
        """Subscribe to the live view of ``TABLE`` filtered by one column.

        Subscribers of the same scope share one channel.
        """
        query = self._live.get(scope_value)
        if query is None or query.closed:
            query = LiveQuery(
                self._db,
                self._logger,
                table=self.TABLE,
                scope_column=scope_column,
                scope_value=scope_value,
                model=model,
                prime=prime,
                sort_key=sort_key,
                reverse=reverse,
                on_idle=self._forget_live_query,
            )
            self._live[scope_value] = query
        return await query.subscribe()

    def _forget_live_query(self, query: LiveQuery[Any]) -> None:
        for scope, registered in list(self._live.items()):
            if registered is query:
                del self._live[scope]

    async def close_live_queries(self) -> None:
        """Close every live query owned by this repository."""
        for query in list(self._live.values()):
            await query.close()
        self._live.clear()

    def clear_memory_cache(self) -> None:
        """Forget per-session in-memory state.  Subclasses extend."""
