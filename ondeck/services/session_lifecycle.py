"""
Session Lifecycle Controller.

Listens to auth state transitions and tears down per-account state on
sign-out, so a second account signing in on the same device never sees
the first account's cached rows or resolved identity.

Sign-in needs no action: identity and cache fill lazily on demand.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from ondeck.logger import StructuredLogger
from ondeck.models.enums import SessionEvent
from ondeck.services.base_service import BaseService
from ondeck.services.identity import IdentityResolver
from ondeck.services.offline_cache import OfflineCacheService


class SessionScoped(Protocol):
    """Anything holding per-session in-memory state (the repositories)."""

    def clear_memory_cache(self) -> None: ...  # noqa: E704

    async def close_live_queries(self) -> None: ...  # noqa: E704


class SessionLifecycleController(BaseService):
    """Reacts to sign-in / sign-out transitions.

    Parameters
    ----------
    identity:
        The process-wide identity resolver.
    cache:
        The process-wide offline cache.
    logger:
        A ``StructuredLogger`` instance.
    repositories:
        Repositories whose in-memory state and live queries are dropped on
        sign-out.
    on_password_recovery:
        Called when the user arrives through a password-reset link, so the
        UI can route to the new-password screen.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        cache: OfflineCacheService,
        logger: StructuredLogger,
        *,
        repositories: Iterable[SessionScoped] = (),
        on_password_recovery: Optional[Callable[[], Awaitable[None] | None]] = None,
    ) -> None:
        super().__init__(logger)
        self._identity = identity
        self._cache = cache
        self._repositories: list[SessionScoped] = list(repositories)
        self._on_password_recovery = on_password_recovery
        self._subscription: Any = None
        self._pending: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def handle_event(self, event: str, session: Any = None) -> None:
        """Dispatch one auth state transition."""
        name = str(getattr(event, "value", event))
        self._logger.info("Auth state changed: %s", name, extra={"event": name})

        if name == SessionEvent.SIGNED_OUT:
            await self.on_signed_out()
        elif name == SessionEvent.PASSWORD_RECOVERY and self._on_password_recovery is not None:
            result = self._on_password_recovery()
            if asyncio.iscoroutine(result):
                await result

    async def on_signed_out(self) -> None:
        """Drop every piece of per-account state.

        Idempotent and never raises: a failing step is logged and the
        remaining steps still run.
        """
        self._identity.reset()
        for repository in self._repositories:
            try:
                repository.clear_memory_cache()
                await repository.close_live_queries()
            except Exception as exc:
                self._logger.warning(
                    "Failed to release session state of %s: %s",
                    type(repository).__name__, exc,
                )
        try:
            await self._cache.clear_all()
        except Exception as exc:
            self._logger.error("Offline cache could not be cleared on sign-out: %s", exc)
        self._logger.info("Session state cleared.", extra={"event": "SESSION_CLEARED"})

    # ------------------------------------------------------------------
    # Auth client wiring
    # ------------------------------------------------------------------

    def attach(self, auth: Any) -> None:
        """Register with ``auth.on_auth_state_change``.

        The auth client calls back synchronously; each event is scheduled
        on the running loop and tracked until it completes.
        """
        self.detach()
        self._subscription = auth.on_auth_state_change(self._on_auth_state_change)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def wait_idle(self) -> None:
        """Wait for every scheduled transition handler to finish."""
        while True:
            pending = [task for task in self._pending if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_auth_state_change(self, event: Any, session: Any = None) -> None:
        task = asyncio.get_running_loop().create_task(self.handle_event(event, session))
        self._pending.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.error(
                "Auth state handler failed: %s", task.exception(),
                exc_info=task.exception(),
            )
