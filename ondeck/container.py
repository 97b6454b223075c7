"""
Composition Root.

``create_services()`` wires the offline cache, the identity resolver, every
repository, the session lifecycle controller and the auth service together,
returning a typed dict the application layer can consume without knowing
the internal dependency graph.

The cache store and the identity resolver are created exactly once here
and shared by every repository.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, TypedDict

from ondeck.config import AppConfig
from ondeck.database import DatabaseManager
from ondeck.logger import get_logger
from ondeck.repositories.game_roster_repository import GameRosterRepository
from ondeck.repositories.player_repository import PlayerRepository
from ondeck.repositories.team_repository import TeamRepository
from ondeck.repositories.user_repository import UserRepository
from ondeck.services.auth_service import AuthService
from ondeck.services.identity import IdentityResolver
from ondeck.services.offline_cache import OfflineCacheService
from ondeck.services.session_lifecycle import SessionLifecycleController
from ondeck.storage import KeyValueStore, SecureKeyValueStore
from ondeck.utils.clock import Clock


class ServiceContainer(TypedDict):
    """Typed container for the wired data layer."""

    cache: OfflineCacheService
    identity: IdentityResolver
    player_repository: PlayerRepository
    game_roster_repository: GameRosterRepository
    team_repository: TeamRepository
    user_repository: UserRepository
    session_controller: SessionLifecycleController
    auth_service: AuthService


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    store: Optional[KeyValueStore] = None,
    clock: Optional[Clock] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the data layer.  The entry
    point calls it once at startup.

    Args:
        db: Initialised DatabaseManager (SQLite ready, Supabase optional).
        config: Application configuration.
        store: Persistent key/value medium.  Defaults to the encrypted
            SQLite store backed by ``db``.
        clock: Time source for cache ages; the system clock by default.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Shared infrastructure
    # ------------------------------------------------------------------
    if store is None:
        store = SecureKeyValueStore(
            db=db,
            logger=get_logger("secure_store"),
            salt_path=Path(config.SECURE_STORE_SALT_PATH),
        )
    cache = OfflineCacheService(
        store,
        get_logger("offline_cache"),
        prefix=config.CACHE_KEY_PREFIX,
        default_ttl_minutes=config.CACHE_DEFAULT_TTL_MINUTES,
        enabled=config.CACHE_ENABLED,
        clock=clock,
    )
    identity = IdentityResolver(
        db,
        get_logger("identity"),
        retry_delay_s=config.IDENTITY_RETRY_DELAY_S,
    )

    # ------------------------------------------------------------------
    # 2. Repositories (data-access layer)
    # ------------------------------------------------------------------
    player_repo = PlayerRepository(db=db, cache=cache, identity=identity, logger=logger)
    roster_repo = GameRosterRepository(db=db, cache=cache, identity=identity, logger=logger)
    team_repo = TeamRepository(db=db, cache=cache, identity=identity, logger=logger)
    user_repo = UserRepository(db=db, cache=cache, identity=identity, logger=logger)

    # ------------------------------------------------------------------
    # 3. Session and auth
    # ------------------------------------------------------------------
    session_controller = SessionLifecycleController(
        identity,
        cache,
        get_logger("session"),
        repositories=(player_repo, roster_repo, team_repo, user_repo),
    )
    auth_service = AuthService(
        db=db,
        identity=identity,
        user_repo=user_repo,
        session_controller=session_controller,
        logger=get_logger("auth"),
    )

    return ServiceContainer(
        cache=cache,
        identity=identity,
        player_repository=player_repo,
        game_roster_repository=roster_repo,
        team_repository=team_repo,
        user_repository=user_repo,
        session_controller=session_controller,
        auth_service=auth_service,
    )


__all__ = ["ServiceContainer", "create_services"]
