"""
Team Repository.

Data access for ``public.teams`` and ``public.team_members``.

Teams are not persisted offline.  The caller's team list is memoised in
memory for the session and dropped whenever a membership changes or the
user signs out.  Authorization checks (``is_team_owner``) always read the
server at the time of the check.
"""

from __future__ import annotations

from typing import Any, Optional

from ondeck.errors import (
    AuthorizationError,
    ConnectivityError,
    DataValidationError,
    NotSignedInError,
)
from ondeck.models.enums import TeamRole
from ondeck.models.team import (
    MEMBERSHIP_COLUMNS,
    TEAM_COLUMNS,
    TEAM_MEMBER_COLUMNS,
    Team,
    TeamMember,
    TeamMembership,
)
from ondeck.repositories.base_repository import BaseRepository
from ondeck.services.offline_cache import OfflineCacheService

# Offered when the sports catalogue cannot be reached, so pickers still work.
_FALLBACK_SPORTS: list[dict[str, Any]] = [
    {"id": None, "name": "General", "category": "Year-Round"},
]


class TeamRepository(BaseRepository):
    """Teams, memberships and member management."""

    TABLE = "teams"
    MEMBERS_TABLE = "team_members"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        # Memoised list and the principal it was fetched for.
        self._teams: Optional[list[TeamMembership]] = None
        self._teams_principal: Optional[str] = None
        self._generation: int = 0

    def clear_memory_cache(self) -> None:
        self._teams = None
        self._teams_principal = None
        self._generation += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_teams(self, force_refresh: bool = False) -> list[TeamMembership]:
        """Teams the signed-in user belongs to (any role), sorted by name.

        Parameters
        ----------
        force_refresh:
            Bypass the in-memory list, e.g. right after a player link or a
            team creation.

        Raises
        ------
        NotSignedInError
            No session.
        DataValidationError
            The session has no profile row, even after one retry.
        """
        generation = self._generation
        principal = await self._identity.current_principal()
        if principal is None:
            raise NotSignedInError("Not signed in.")
        if (
            not force_refresh
            and self._teams is not None
            and self._teams_principal == principal
        ):
            return list(self._teams)

        user_id = await self._identity.resolve(principal)
        if user_id is None:
            raise DataValidationError(
                "User profile not found. Please sign out and sign in again."
            )

        rows = await self._select_rows(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .select(MEMBERSHIP_COLUMNS)
                .eq("user_id", user_id)
                .order("team_name", foreign_table="teams")
                .execute()
            ),
            operation_name="get_teams (team_members)",
        )
        memberships = [TeamMembership.from_row(row) for row in rows if row.get("teams")]
        memberships.sort(key=lambda membership: membership.team.team_name.lower())
        if generation == self._generation:
            self._teams = memberships
            self._teams_principal = principal
        return list(memberships)

    async def get_team(self, team_id: str) -> Optional[Team]:
        row = await self._select_one(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(TEAM_COLUMNS)
                .eq("id", team_id)
                .limit(1)
                .execute()
            ),
            operation_name="get_team (teams)",
        )
        return None if row is None else Team.model_validate(row)

    async def get_team_members(self, team_id: str) -> list[TeamMember]:
        """Members of *team_id* with their profile, ordered by role then name."""
        rows = await self._select_rows(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .select(TEAM_MEMBER_COLUMNS)
                .eq("team_id", team_id)
                .order("role")
                .order("first_name", foreign_table="users")
                .execute()
            ),
            operation_name="get_team_members (team_members)",
        )
        return [TeamMember.model_validate(row) for row in rows]

    async def get_sports(self) -> list[dict[str, Any]]:
        """Sports catalogue ordered by name.

        Offline, a single ``General`` entry is returned instead.
        """
        try:
            return await self._select_rows(
                lambda: (
                    self.supabase.table("sports")
                    .select("id, name, category")
                    .order("name")
                    .execute()
                ),
                operation_name="get_sports (sports)",
            )
        except ConnectivityError:
            self._logger.warning("Sports catalogue unreachable; using fallback entry.")
            return [dict(sport) for sport in _FALLBACK_SPORTS]

    async def lookup_user_by_email(self, email: str) -> Optional[dict[str, Any]]:
        """Profile row registered for *email*, or ``None``."""
        return await self._select_one(
            lambda: self.supabase.rpc(
                "lookup_user_by_email", {"p_email": email.strip().lower()},
            ).execute(),
            operation_name="lookup_user_by_email (users)",
        )

    async def is_team_owner(self, team_id: str) -> bool:
        """``True`` when the signed-in user owns *team_id* right now."""
        user_id = await self._identity.resolve_current()
        if user_id is None:
            return False
        return await self._member_role(team_id, user_id) == TeamRole.OWNER

    # ------------------------------------------------------------------
    # Team mutations
    # ------------------------------------------------------------------

    async def create_team(self, team_name: str, sport: str, sport_id: Optional[str] = None) -> None:
        """Create a team owned by the caller (``create_team`` RPC)."""
        if await self._identity.current_principal() is None:
            raise NotSignedInError("You must be logged in to create a team.")
        if not team_name.strip():
            raise DataValidationError("Team name is required.")
        params: dict[str, Any] = {"p_team_name": team_name.strip(), "p_sport": sport}
        if sport_id is not None:
            params["p_sport_id"] = sport_id
        await self._run_mutation(
            lambda: self.supabase.rpc("create_team", params).execute(),
            operation_name="create_team (teams)",
        )
        self.clear_memory_cache()

    async def update_team(
        self,
        team_id: str,
        team_name: str,
        sport: str,
        sport_id: Optional[str] = None,
    ) -> None:
        """Update team metadata.  Owner-only, enforced by the server."""
        if not team_name.strip():
            raise DataValidationError("Team name is required.")
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update({"team_name": team_name.strip(), "sport": sport, "sport_id": sport_id})
                .eq("id", team_id)
                .execute()
            ),
            operation_name="update_team (teams)",
        )
        self.clear_memory_cache()

    async def delete_team(self, team_id: str) -> None:
        """Delete a team and, by cascade, its players and memberships."""
        if not await self.is_team_owner(team_id):
            raise AuthorizationError("Only team owners can delete teams.")
        await self._run_mutation(
            lambda: self.supabase.table(self.TABLE).delete().eq("id", team_id).execute(),
            operation_name="delete_team (teams)",
            invalidate=[
                OfflineCacheService.players_key(team_id),
                OfflineCacheService.game_rosters_key(team_id),
            ],
        )
        self.clear_memory_cache()

    # ------------------------------------------------------------------
    # Member mutations
    # ------------------------------------------------------------------

    async def add_member(self, team_id: str, email: str, role: str) -> None:
        """Add the account registered for *email* (``add_member_to_team`` RPC)."""
        if role == TeamRole.OWNER:
            raise DataValidationError("Use transfer_ownership to assign the owner role.")
        await self._run_mutation(
            lambda: self.supabase.rpc(
                "add_member_to_team",
                {"p_team_id": team_id, "p_email": email.strip().lower(), "p_role": role},
            ).execute(),
            operation_name="add_member (team_members)",
        )
        self.clear_memory_cache()

    async def remove_member(self, team_id: str, user_id: str) -> None:
        """Remove *user_id* from *team_id*.

        Anyone may remove themselves; removing someone else needs the
        owner role.  The sole owner can never be removed.  A linked player
        row is unlinked before the membership is deleted.
        """
        current_user_id = await self._require_user_id()
        if user_id != current_user_id:
            if await self._member_role(team_id, current_user_id) != TeamRole.OWNER:
                raise AuthorizationError("Only team owners can remove other members.")

        member = await self._select_one(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .select("role, player_id")
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            ),
            operation_name="remove_member (team_members)",
        )
        if member is None:
            raise DataValidationError("That person is not a member of this team.")

        if member.get("role") == TeamRole.OWNER:
            owners = await self._select_rows(
                lambda: (
                    self.supabase.table(self.MEMBERS_TABLE)
                    .select("id")
                    .eq("team_id", team_id)
                    .eq("role", TeamRole.OWNER.value)
                    .execute()
                ),
                operation_name="remove_member (team_members)",
            )
            if len(owners) <= 1:
                raise DataValidationError(
                    "Cannot remove the only owner. Transfer ownership first."
                )

        linked_player_id = member.get("player_id")
        if linked_player_id:
            await self._run_mutation(
                lambda: (
                    self.supabase.table("players")
                    .update({"user_id": None})
                    .eq("id", linked_player_id)
                    .execute()
                ),
                operation_name="remove_member (players)",
                invalidate=[OfflineCacheService.players_key(team_id)],
            )

        await self._run_mutation(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .delete()
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .execute()
            ),
            operation_name="remove_member (team_members)",
        )
        self.clear_memory_cache()

    async def transfer_ownership(self, team_id: str, new_owner_user_id: str) -> None:
        """Demote the caller to coach and promote *new_owner_user_id*."""
        current_user_id = await self._require_user_id()
        if await self._member_role(team_id, current_user_id) != TeamRole.OWNER:
            raise AuthorizationError("Only the current owner can transfer ownership.")
        if new_owner_user_id == current_user_id:
            raise DataValidationError("You already own this team.")

        await self._set_role(team_id, current_user_id, TeamRole.COACH, "transfer_ownership")
        await self._set_role(team_id, new_owner_user_id, TeamRole.OWNER, "transfer_ownership")
        self.clear_memory_cache()

    async def update_member_role(self, team_id: str, user_id: str, new_role: str) -> None:
        """Change the role of a non-owner member (owner-only)."""
        if new_role == TeamRole.OWNER:
            raise DataValidationError("Use transfer_ownership to assign the owner role.")
        if not await self.is_team_owner(team_id):
            raise AuthorizationError("Only team owners can change member roles.")
        await self._set_role(team_id, user_id, new_role, "update_member_role")
        self.clear_memory_cache()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _member_role(self, team_id: str, user_id: str) -> Optional[str]:
        row = await self._select_one(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .select("role")
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            ),
            operation_name="member_role (team_members)",
        )
        return None if row is None else row.get("role")

    async def _set_role(self, team_id: str, user_id: str, role: str, operation: str) -> None:
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.MEMBERS_TABLE)
                .update({"role": str(role)})
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .execute()
            ),
            operation_name=f"{operation} (team_members)",
        )
