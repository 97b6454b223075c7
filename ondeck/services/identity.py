"""
Identity Resolution Memo.

Most roster queries are scoped by the caller's application user id
(``public.users.id``), which differs from the auth principal
(``auth.users.id``).  Looking it up on every call doubles the round-trips,
so the first successful lookup per session is memoised here.

Rules:

- concurrent first calls share a single lookup (single-flight);
- only a found id is memoised; a miss or a failure leaves the memo empty
  so the next call tries again;
- ``reset()`` (sign-out) empties the memo, and a lookup still in flight at
  that moment can no longer store its result.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from ondeck.database import DatabaseManager
from ondeck.errors import classify_error
from ondeck.logger import StructuredLogger
from ondeck.services.base_service import BaseService


class IdentityResolver(BaseService):
    """Memoises the principal → user id mapping for the current session.

    Parameters
    ----------
    db:
        ``DatabaseManager`` providing the Supabase client.
    logger:
        A ``StructuredLogger`` instance.
    retry_delay_s:
        Delay before the single retry of a lookup that found no row.  The
        profile row of a fresh sign-up is created by a server trigger and
        can lag the auth event slightly.
    sleep:
        Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        *,
        retry_delay_s: float = 0.8,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(logger)
        self._db: DatabaseManager = db
        self._retry_delay_s: float = retry_delay_s
        self._sleep: Callable[[float], Awaitable[None]] = sleep

        self._principal: Optional[str] = None
        self._identifier: Optional[str] = None
        self._inflight: Optional[asyncio.Future[Optional[str]]] = None
        self._inflight_principal: Optional[str] = None
        self._generation: int = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def current(self) -> Optional[str]:
        """The memoised user id, or ``None``."""
        return self._identifier

    @property
    def principal(self) -> Optional[str]:
        """The principal the memo belongs to, or ``None``."""
        return self._principal

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def current_principal(self) -> Optional[str]:
        """Auth principal of the active session, or ``None`` when signed out."""
        try:
            session = await self._db.supabase.auth.get_session()
        except Exception as exc:
            raise classify_error(exc, "current_principal (auth)") from exc
        if session is None or session.user is None:
            return None
        return str(session.user.id)

    async def resolve_current(self) -> Optional[str]:
        """Resolve the user id of whoever is signed in right now."""
        principal = await self.current_principal()
        if principal is None:
            return None
        return await self.resolve(principal)

    async def resolve(self, principal: str) -> Optional[str]:
        """Return the user id for *principal*, looking it up at most once.

        Returns ``None`` when no profile row exists (even after one retry).

        Raises
        ------
        DataAccessError
            The lookup failed; every concurrent waiter receives the same
            classified error and the memo stays empty.
        """
        owner = self._principal or self._inflight_principal
        if owner is not None and owner != principal:
            # A sign-out was missed; never hand out another account's id.
            self._logger.warning(
                "Identity memo belongs to a different principal; re-resolving.",
                extra={"event": "IDENTITY_PRINCIPAL_MISMATCH"},
            )
            self.reset()

        if self._identifier is not None:
            return self._identifier

        if self._inflight is None:
            self._inflight_principal = principal
            self._inflight = asyncio.ensure_future(
                self._lookup_and_store(principal, self._generation),
            )
        # shield: a cancelled waiter must not cancel the shared lookup
        return await asyncio.shield(self._inflight)

    def prime(self, principal: str, identifier: str) -> None:
        """Store an id that was obtained by another query."""
        if self._principal is not None and self._principal != principal:
            self.reset()
        self._principal = principal
        self._identifier = identifier

    def reset(self) -> None:
        """Forget the memo.  An in-flight lookup will not store its result."""
        self._generation += 1
        self._principal = None
        self._identifier = None
        self._inflight = None
        self._inflight_principal = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _lookup_and_store(self, principal: str, generation: int) -> Optional[str]:
        try:
            identifier = await self._fetch_identifier(principal)
            if identifier is None:
                self._logger.debug(
                    "No profile row for principal yet; retrying in %.1fs.",
                    self._retry_delay_s,
                )
                await self._sleep(self._retry_delay_s)
                identifier = await self._fetch_identifier(principal)
        finally:
            if self._generation == generation:
                self._inflight = None
                self._inflight_principal = None

        if identifier is not None and self._generation == generation:
            self._principal = principal
            self._identifier = identifier
        elif identifier is None:
            self._logger.warning("No profile row found for the signed-in principal.")
        return identifier

    async def _fetch_identifier(self, principal: str) -> Optional[str]:
        try:
            response = await (
                self._db.supabase.table("users")
                .select("id")
                .eq("user_id", principal)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise classify_error(exc, "resolve_identity (users)") from exc
        rows = response.data or []
        return str(rows[0]["id"]) if rows else None
