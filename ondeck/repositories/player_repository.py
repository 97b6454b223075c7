"""
Player Repository.

Data access for ``public.players``.  The full team roster is the only
player read cached for offline use; every mutation drops that cache entry
so the next read goes back to the server.
"""

from __future__ import annotations

from typing import Optional

from ondeck.errors import DataValidationError, classify_error
from ondeck.models.cache_models import FetchResult
from ondeck.models.enums import PlayerStatus
from ondeck.models.player import PLAYER_COLUMNS, Player
from ondeck.realtime import LiveSubscription
from ondeck.repositories.base_repository import BaseRepository
from ondeck.services.offline_cache import OfflineCacheService


class PlayerRepository(BaseRepository):
    """Data access for players, scoped by team."""

    TABLE = "players"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_players(self, team_id: str) -> FetchResult[Player]:
        """All players of *team_id* ordered by name.

        Falls back to the offline copy when the server is unreachable.
        """
        return await self._fetch_with_fallback(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(PLAYER_COLUMNS)
                .eq("team_id", team_id)
                .order("name")
                .execute()
            ),
            model=Player,
            cache_key=OfflineCacheService.players_key(team_id),
            operation_name="get_players (players)",
        )

    async def get_players_page(self, team_id: str, start: int, end: int) -> FetchResult[Player]:
        """One slice of the roster, rows *start* to *end* inclusive.

        Only the first slice may be served from the offline copy; a later
        slice raises ``ConnectivityError`` when offline so infinite scroll
        stops instead of repeating cached rows.  Pages are never written to
        the cache.
        """
        if start < 0 or end < start:
            raise DataValidationError(f"Invalid page range {start}..{end}.")
        return await self._fetch_with_fallback(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(PLAYER_COLUMNS)
                .eq("team_id", team_id)
                .order("name")
                .range(start, end)
                .execute()
            ),
            model=Player,
            cache_key=OfflineCacheService.players_key(team_id),
            operation_name="get_players_page (players)",
            write_through=False,
            allow_fallback=start == 0,
            select_cached=lambda players: players[start:end + 1],
        )

    async def get_my_player_on_team(self, team_id: str) -> Optional[Player]:
        """The player row linked to the signed-in user on *team_id*."""
        user_id = await self._identity.resolve_current()
        if user_id is None:
            return None
        row = await self._select_one(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(PLAYER_COLUMNS)
                .eq("team_id", team_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            ),
            operation_name="get_my_player_on_team (players)",
        )
        return None if row is None else Player.model_validate(row)

    async def get_attendance_summary(self, team_id: str) -> dict[str, int]:
        """Per-status head count; every known status is present."""
        rows = await self._select_rows(
            lambda: (
                self.supabase.table(self.TABLE)
                .select("status")
                .eq("team_id", team_id)
                .execute()
            ),
            operation_name="get_attendance_summary (players)",
        )
        summary: dict[str, int] = {status.value: 0 for status in PlayerStatus}
        for row in rows:
            status = row.get("status") or PlayerStatus.PRESENT.value
            summary[status] = summary.get(status, 0) + 1
        return summary

    async def watch_players(self, team_id: str) -> LiveSubscription[Player]:
        """Live, name-ordered view of the roster of *team_id*."""
        return await self._watch(
            team_id,
            scope_column="team_id",
            model=Player,
            prime=lambda: (
                self.supabase.table(self.TABLE)
                .select(PLAYER_COLUMNS)
                .eq("team_id", team_id)
                .order("name")
                .execute()
            ),
            sort_key=lambda player: player.name.lower(),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_player(self, player: Player) -> str:
        """Insert *player* and return the generated id."""
        if not player.team_id:
            raise DataValidationError("A player must belong to a team.")
        if not player.name.strip():
            raise DataValidationError("Player name is required.")
        response = await self._run_mutation(
            lambda: self.supabase.table(self.TABLE).insert(player.to_row()).execute(),
            operation_name="add_player (players)",
            invalidate=[OfflineCacheService.players_key(player.team_id)],
        )
        rows = response.data or []
        if not rows or not rows[0].get("id"):
            raise DataValidationError("The server did not return the new player id.")
        return str(rows[0]["id"])

    async def update_player(self, player: Player) -> None:
        """Overwrite every writable column of *player*."""
        if not player.id:
            raise DataValidationError("Cannot update a player without an id.")
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update(player.to_row())
                .eq("id", player.id)
                .execute()
            ),
            operation_name="update_player (players)",
            invalidate=[OfflineCacheService.players_key(player.team_id)],
        )

    async def update_player_status(self, team_id: str, player_id: str, status: str) -> None:
        """Set only the ``status`` column of one player."""
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update({"status": status})
                .eq("id", player_id)
                .execute()
            ),
            operation_name="update_player_status (players)",
            invalidate=[OfflineCacheService.players_key(team_id)],
        )

    async def bulk_update_status(self, team_id: str, status: str) -> None:
        """Set *status* on every player of *team_id* in one statement."""
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update({"status": status})
                .eq("team_id", team_id)
                .execute()
            ),
            operation_name="bulk_update_status (players)",
            invalidate=[OfflineCacheService.players_key(team_id)],
        )

    async def bulk_delete_players(self, team_id: str, player_ids: list[str]) -> None:
        """Delete several players in one statement.  An empty list is a no-op."""
        if not player_ids:
            return
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .delete()
                .in_("id", player_ids)
                .execute()
            ),
            operation_name="bulk_delete_players (players)",
            invalidate=[OfflineCacheService.players_key(team_id)],
        )

    async def delete_player(self, team_id: str, player_id: str) -> None:
        await self._run_mutation(
            lambda: self.supabase.table(self.TABLE).delete().eq("id", player_id).execute(),
            operation_name="delete_player (players)",
            invalidate=[OfflineCacheService.players_key(team_id)],
        )

    # ------------------------------------------------------------------
    # Account links
    # ------------------------------------------------------------------

    async def link_player_to_account(self, team_id: str, player_id: str, player_email: str) -> None:
        """Link a roster entry to the app account registered for *player_email*."""
        try:
            await self.supabase.rpc(
                "link_player_to_user",
                {
                    "p_team_id": team_id,
                    "p_player_id": player_id,
                    "p_player_email": player_email,
                },
            ).execute()
        except Exception as exc:
            text = str(exc)
            if "No user found" in text:
                raise DataValidationError(
                    f"No account found for {player_email}. The athlete must sign up first.",
                    exc,
                ) from exc
            if "No player found" in text:
                raise DataValidationError("Player not found on this team.", exc) from exc
            raise classify_error(exc, "link_player_to_account (players)") from exc
        await self._cache.invalidate(OfflineCacheService.players_key(team_id))

    async def link_guardian_to_player(self, player_id: str, guardian_email: str) -> bool:
        """Link a guardian e-mail to a player.

        Non-fatal for the calling flow: failures are logged and reported
        as ``False``.
        """
        try:
            await self.supabase.rpc(
                "link_guardian_to_player",
                {"p_player_id": player_id, "p_guardian_email": guardian_email},
            ).execute()
        except Exception as exc:
            self._logger.warning(
                "link_guardian_to_player failed: %s", classify_error(exc).message,
            )
            return False
        return True
