"""Teams, memberships and member management."""

from __future__ import annotations

import httpx
import pytest

from ondeck.errors import AuthorizationError, DataValidationError, NotSignedInError
from tests.conftest import PRINCIPAL, USER_ID
from tests.fakes import make_session


def membership(team_id: str, name: str, role: str = "coach") -> dict:
    return {
        "team_id": team_id,
        "role": role,
        "player_id": None,
        "teams": {"id": team_id, "team_name": name, "sport": "Soccer"},
    }


def as_role(role: str):
    """Answer ``team_members`` role lookups with *role*."""
    return lambda query: [{"role": role, "player_id": None, "id": "m1"}]


@pytest.mark.asyncio
async def test_get_teams_is_sorted_and_memoised(teams, supabase):
    supabase.script("team_members", [
        membership("t2", "zebras"), membership("t1", "Aces", "owner"),
        {"team_id": "t9", "role": "coach", "teams": None},
    ])

    first = await teams.get_teams()
    second = await teams.get_teams()

    assert [item.team.team_name for item in first] == ["Aces", "zebras"]
    assert first[0].is_owner
    assert second == first
    assert len(supabase.executed("team_members")) == 1
    assert supabase.executed("team_members")[0].filter_value("user_id") == USER_ID


@pytest.mark.asyncio
async def test_force_refresh_and_clear(teams, supabase):
    supabase.script("team_members", [membership("t1", "Aces")], [], [])

    await teams.get_teams()
    assert await teams.get_teams(force_refresh=True) == []
    teams.clear_memory_cache()
    await teams.get_teams()

    assert len(supabase.executed("team_members")) == 3


@pytest.mark.asyncio
async def test_get_teams_signed_out(teams, supabase):
    supabase.auth.session = None

    with pytest.raises(NotSignedInError):
        await teams.get_teams()


@pytest.mark.asyncio
async def test_get_teams_without_profile(teams, supabase):
    supabase.handle("users", lambda query: [])

    with pytest.raises(DataValidationError, match="User profile not found"):
        await teams.get_teams()


@pytest.mark.asyncio
async def test_team_members_flatten_profile(teams, supabase):
    supabase.script("team_members", [{
        "id": "m1", "team_id": "t1", "user_id": "u2", "role": "coach",
        "users": {"first_name": None, "last_name": None, "name": "Jordan Lee",
                  "email": "jl@example.com"},
    }])

    members = await teams.get_team_members("t1")

    assert members[0].first_name == "Jordan"
    assert members[0].last_name == "Lee"
    assert supabase.executed("team_members")[0].orders == [
        ("role", False, None), ("first_name", False, "users"),
    ]


@pytest.mark.asyncio
async def test_sports_fall_back_offline(teams, supabase):
    supabase.script("sports", httpx.ConnectError("down"))

    assert await teams.get_sports() == [{"id": None, "name": "General", "category": "Year-Round"}]


@pytest.mark.asyncio
async def test_is_team_owner_reads_server(teams, supabase):
    supabase.script("team_members", [{"role": "owner"}], [{"role": "coach"}])

    assert await teams.is_team_owner("t1") is True
    assert await teams.is_team_owner("t1") is False


@pytest.mark.asyncio
async def test_create_team(teams, supabase):
    teams._teams = []

    await teams.create_team(" Aces ", "Soccer")

    assert supabase.rpc_calls == [("create_team", {"p_team_name": "Aces", "p_sport": "Soccer"})]
    assert teams._teams is None
    with pytest.raises(DataValidationError):
        await teams.create_team("  ", "Soccer")


@pytest.mark.asyncio
async def test_update_team_requires_name(teams, supabase):
    with pytest.raises(DataValidationError):
        await teams.update_team("t1", "", "Soccer")

    await teams.update_team("t1", "Aces FC", "Soccer", "sport-1")
    assert supabase.executed("teams", "update")[0].payload == {
        "team_name": "Aces FC", "sport": "Soccer", "sport_id": "sport-1",
    }


@pytest.mark.asyncio
async def test_delete_team_requires_owner(teams, supabase, cache):
    supabase.handle("team_members", as_role("coach"))

    with pytest.raises(AuthorizationError):
        await teams.delete_team("t1")
    assert supabase.executed("teams", "delete") == []


@pytest.mark.asyncio
async def test_delete_team_invalidates_team_caches(teams, supabase, cache):
    supabase.handle("team_members", as_role("owner"))
    await cache.write("players_t1", [{"id": "p1"}])
    await cache.write("game_rosters_t1", [{"id": "r1"}])

    await teams.delete_team("t1")

    assert await cache.read("players_t1") is None
    assert await cache.read("game_rosters_t1") is None


@pytest.mark.asyncio
async def test_add_member_rejects_owner_role(teams, supabase):
    with pytest.raises(DataValidationError):
        await teams.add_member("t1", "a@example.com", "owner")

    await teams.add_member("t1", " A@Example.com ", "coach")
    assert supabase.rpc_calls == [
        ("add_member_to_team", {"p_team_id": "t1", "p_email": "a@example.com", "p_role": "coach"}),
    ]


@pytest.mark.asyncio
async def test_non_owner_cannot_remove_others(teams, supabase):
    supabase.handle("team_members", as_role("coach"))

    with pytest.raises(AuthorizationError):
        await teams.remove_member("t1", "someone-else")


@pytest.mark.asyncio
async def test_sole_owner_cannot_be_removed(teams, supabase):
    supabase.script("team_members", [{"role": "owner", "player_id": None}], [{"id": "m1"}])

    with pytest.raises(DataValidationError, match="only owner"):
        await teams.remove_member("t1", USER_ID)
    assert supabase.executed("team_members", "delete") == []


@pytest.mark.asyncio
async def test_remove_member_unlinks_player_first(teams, supabase, cache):
    await cache.write("players_t1", [{"id": "p7"}])
    supabase.script(
        "team_members",
        [{"role": "owner"}],
        [{"role": "player", "player_id": "p7"}],
    )

    await teams.remove_member("t1", "u7")

    unlink = supabase.executed("players", "update")[0]
    assert unlink.payload == {"user_id": None}
    assert unlink.filter_value("id") == "p7"
    delete = supabase.executed("team_members", "delete")[0]
    assert delete.filter_value("user_id") == "u7"
    assert supabase.queries.index(unlink) < supabase.queries.index(delete)
    assert await cache.read("players_t1") is None


@pytest.mark.asyncio
async def test_remove_missing_member(teams, supabase):
    supabase.script("team_members", [{"role": "owner"}], [])

    with pytest.raises(DataValidationError, match="not a member"):
        await teams.remove_member("t1", "u7")


@pytest.mark.asyncio
async def test_transfer_ownership(teams, supabase):
    supabase.script("team_members", [{"role": "owner"}])

    await teams.transfer_ownership("t1", "u2")

    demote, promote = supabase.executed("team_members", "update")
    assert (demote.payload, demote.filter_value("user_id")) == ({"role": "coach"}, USER_ID)
    assert (promote.payload, promote.filter_value("user_id")) == ({"role": "owner"}, "u2")


@pytest.mark.asyncio
async def test_transfer_ownership_checks(teams, supabase):
    supabase.script("team_members", [{"role": "coach"}], [{"role": "owner"}])

    with pytest.raises(AuthorizationError):
        await teams.transfer_ownership("t1", "u2")
    with pytest.raises(DataValidationError):
        await teams.transfer_ownership("t1", USER_ID)


@pytest.mark.asyncio
async def test_update_member_role(teams, supabase):
    with pytest.raises(DataValidationError):
        await teams.update_member_role("t1", "u2", "owner")
    assert supabase.queries == []

    supabase.script("team_members", [{"role": "owner"}])
    await teams.update_member_role("t1", "u2", "team_manager")
    assert supabase.executed("team_members", "update")[0].payload == {"role": "team_manager"}


@pytest.mark.asyncio
async def test_lookup_user_by_email(teams, supabase):
    supabase.script_rpc("lookup_user_by_email", [{"id": "u9", "email": "x@example.com"}])

    assert (await teams.lookup_user_by_email(" X@example.com "))["id"] == "u9"
    assert supabase.rpc_calls[0][1] == {"p_email": "x@example.com"}


@pytest.mark.asyncio
async def test_memoised_teams_belong_to_one_principal(teams, supabase):
    supabase.script("team_members", [membership("t1", "Aces")], [])
    supabase.handle(
        "users",
        lambda query: [{"id": {PRINCIPAL: USER_ID, "auth-2": "user-2"}[query.filter_value("user_id")]}],
    )
    await teams.get_teams()

    supabase.auth.session = make_session("auth-2")

    assert await teams.get_teams() == []
    assert len(supabase.executed("team_members")) == 2
