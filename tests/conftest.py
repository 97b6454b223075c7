"""Shared fixtures: a fake Supabase client wired into real services."""

from __future__ import annotations

import io
import os
import tempfile
from pathlib import Path

# Keep test runs from writing ondeck.log into the working tree.
os.environ.setdefault("LOG_FILE", str(Path(tempfile.gettempdir()) / "ondeck-tests.log"))

import pytest  # noqa: E402

from ondeck.database import DatabaseManager  # noqa: E402
from ondeck.logger import StructuredLogger  # noqa: E402
from ondeck.repositories import (  # noqa: E402
    GameRosterRepository,
    PlayerRepository,
    TeamRepository,
    UserRepository,
)
from ondeck.services.identity import IdentityResolver  # noqa: E402
from ondeck.services.offline_cache import OfflineCacheService  # noqa: E402
from tests.fakes import FakeSupabase, MemoryKeyValueStore, MutableClock, make_session  # noqa: E402

PRINCIPAL = "auth-1"
USER_ID = "user-1"

_LOG_STREAM = io.StringIO()


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger(name="ondeck.tests", stream=_LOG_STREAM, file_logging=False)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def cache(store, logger, clock) -> OfflineCacheService:
    return OfflineCacheService(store, logger, default_ttl_minutes=60, clock=clock)


@pytest.fixture
def supabase() -> FakeSupabase:
    client = FakeSupabase()
    client.auth.session = make_session(PRINCIPAL)
    client.handle(
        "users",
        lambda query: (
            [{"id": USER_ID}] if query.filter_value("user_id") == PRINCIPAL else []
        ),
    )
    return client


@pytest.fixture
def db(tmp_path, logger, supabase):
    manager = DatabaseManager(sqlite_path=tmp_path / "local.db", logger=logger, supabase=supabase)
    yield manager
    manager.close()


@pytest.fixture
def offline_db(tmp_path, logger):
    manager = DatabaseManager(sqlite_path=tmp_path / "offline.db", logger=logger)
    yield manager
    manager.close()


@pytest.fixture
def identity(db, logger) -> IdentityResolver:
    return IdentityResolver(db, logger, retry_delay_s=0, sleep=_no_sleep)


@pytest.fixture
def players(db, cache, identity, logger) -> PlayerRepository:
    return PlayerRepository(db=db, cache=cache, identity=identity, logger=logger)


@pytest.fixture
def rosters(db, cache, identity, logger) -> GameRosterRepository:
    return GameRosterRepository(db=db, cache=cache, identity=identity, logger=logger)


@pytest.fixture
def teams(db, cache, identity, logger) -> TeamRepository:
    return TeamRepository(db=db, cache=cache, identity=identity, logger=logger)


@pytest.fixture
def users(db, cache, identity, logger) -> UserRepository:
    return UserRepository(db=db, cache=cache, identity=identity, logger=logger)
