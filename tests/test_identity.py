"""Single-flight identity resolution."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from ondeck.errors import ConnectivityError
from ondeck.services.identity import IdentityResolver
from tests.conftest import PRINCIPAL, USER_ID


def _counting_handler(calls: list, answer=USER_ID):
    def handler(query):
        calls.append(query.filter_value("user_id"))
        return [{"id": answer}] if answer else []
    return handler


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_lookup(identity, supabase):
    calls: list = []
    supabase.handle("users", _counting_handler(calls))

    results = await asyncio.gather(*(identity.resolve(PRINCIPAL) for _ in range(5)))

    assert results == [USER_ID] * 5
    assert calls == [PRINCIPAL]
    assert identity.current == USER_ID
    assert identity.principal == PRINCIPAL


@pytest.mark.asyncio
async def test_memo_is_reused(identity, supabase):
    calls: list = []
    supabase.handle("users", _counting_handler(calls))

    await identity.resolve(PRINCIPAL)
    await identity.resolve(PRINCIPAL)

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_missing_profile_retries_once_then_returns_none(db, logger, supabase):
    calls: list = []
    sleeps: list = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    supabase.handle("users", _counting_handler(calls, answer=None))
    identity = IdentityResolver(db, logger, retry_delay_s=0.8, sleep=fake_sleep)

    assert await identity.resolve(PRINCIPAL) is None
    assert len(calls) == 2
    assert sleeps == [0.8]
    assert identity.current is None


@pytest.mark.asyncio
async def test_profile_appearing_on_retry_is_stored(identity, supabase):
    supabase.script("users", [], [{"id": USER_ID}])

    assert await identity.resolve(PRINCIPAL) == USER_ID
    assert identity.current == USER_ID


@pytest.mark.asyncio
async def test_failed_lookup_reaches_every_waiter_and_is_not_memoised(identity, supabase):
    supabase.script("users", httpx.ConnectError("offline"))

    results = await asyncio.gather(
        identity.resolve(PRINCIPAL), identity.resolve(PRINCIPAL), return_exceptions=True,
    )

    assert all(isinstance(result, ConnectivityError) for result in results)
    assert identity.current is None
    assert await identity.resolve(PRINCIPAL) == USER_ID


@pytest.mark.asyncio
async def test_reset_during_lookup_discards_result(identity, supabase):
    release = asyncio.Event()

    async def gated_fetch(principal):
        await release.wait()
        return USER_ID

    identity._fetch_identifier = gated_fetch
    pending = asyncio.ensure_future(identity.resolve(PRINCIPAL))
    await asyncio.sleep(0)

    identity.reset()
    release.set()

    assert await pending == USER_ID
    assert identity.current is None
    assert identity.principal is None


@pytest.mark.asyncio
async def test_principal_change_never_returns_previous_id(identity, supabase):
    supabase.handle(
        "users",
        lambda query: [{"id": f"profile-of-{query.filter_value('user_id')}"}],
    )

    assert await identity.resolve("auth-A") == "profile-of-auth-A"
    assert await identity.resolve("auth-B") == "profile-of-auth-B"
    assert identity.principal == "auth-B"


@pytest.mark.asyncio
async def test_prime_skips_lookup(identity, supabase):
    identity.prime(PRINCIPAL, "primed-id")

    assert await identity.resolve(PRINCIPAL) == "primed-id"
    assert supabase.executed("users") == []


@pytest.mark.asyncio
async def test_resolve_current_without_session_is_none(identity, supabase):
    supabase.auth.session = None

    assert await identity.current_principal() is None
    assert await identity.resolve_current() is None


@pytest.mark.asyncio
async def test_resolve_offline_is_connectivity_error(offline_db, logger):
    identity = IdentityResolver(offline_db, logger)

    with pytest.raises(ConnectivityError):
        await identity.resolve_current()
