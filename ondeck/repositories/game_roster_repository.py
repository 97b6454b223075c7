"""
Game Roster Repository.

Data access for ``public.game_rosters``: saved line-ups, newest first.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from ondeck.errors import DataValidationError
from ondeck.models.cache_models import FetchResult
from ondeck.models.game_roster import GAME_ROSTER_COLUMNS, GameRoster
from ondeck.realtime import LiveSubscription
from ondeck.repositories.base_repository import BaseRepository
from ondeck.services.offline_cache import OfflineCacheService

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class GameRosterRepository(BaseRepository):
    """Data access for saved game rosters, scoped by team."""

    TABLE = "game_rosters"

    async def get_game_rosters(self, team_id: str) -> FetchResult[GameRoster]:
        """Saved rosters of *team_id*, newest first, with offline fallback."""
        return await self._fetch_with_fallback(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(GAME_ROSTER_COLUMNS)
                .eq("team_id", team_id)
                .order("created_at", desc=True)
                .execute()
            ),
            model=GameRoster,
            cache_key=OfflineCacheService.game_rosters_key(team_id),
            operation_name="get_game_rosters (game_rosters)",
        )

    async def get_game_roster(self, roster_id: str) -> Optional[GameRoster]:
        """One saved roster by id, or ``None``."""
        row = await self._select_one(
            lambda: (
                self.supabase.table(self.TABLE)
                .select(GAME_ROSTER_COLUMNS)
                .eq("id", roster_id)
                .limit(1)
                .execute()
            ),
            operation_name="get_game_roster (game_rosters)",
        )
        return None if row is None else GameRoster.model_validate(row)

    async def watch_game_rosters(self, team_id: str) -> LiveSubscription[GameRoster]:
        return await self._watch(
            team_id,
            scope_column="team_id",
            model=GameRoster,
            prime=lambda: (
                self.supabase.table(self.TABLE)
                .select(GAME_ROSTER_COLUMNS)
                .eq("team_id", team_id)
                .order("created_at", desc=True)
                .execute()
            ),
            sort_key=lambda roster: roster.created_at or _EPOCH,
            reverse=True,
        )

    async def create_game_roster(
        self,
        team_id: str,
        title: str,
        game_date: Optional[date] = None,
        starter_slots: int = 5,
    ) -> str:
        """Create an empty line-up and return its id.

        The creator is recorded when the caller's user id can be resolved.
        """
        if not title.strip():
            raise DataValidationError("Roster title is required.")
        if starter_slots < 0:
            raise DataValidationError("Starter slots cannot be negative.")

        row: dict[str, Any] = {
            "team_id": team_id,
            "title": title.strip(),
            "game_date": game_date.isoformat() if game_date else None,
            "starter_slots": starter_slots,
            "starters": [],
            "substitutes": [],
        }
        created_by = await self._identity.resolve_current()
        if created_by is not None:
            row["created_by"] = created_by

        response = await self._run_mutation(
            lambda: self.supabase.table(self.TABLE).insert(row).execute(),
            operation_name="create_game_roster (game_rosters)",
            invalidate=[OfflineCacheService.game_rosters_key(team_id)],
        )
        rows = response.data or []
        if not rows or not rows[0].get("id"):
            raise DataValidationError("The server did not return the new roster id.")
        return str(rows[0]["id"])

    async def update_lineup(
        self,
        team_id: str,
        roster_id: str,
        starters: list[dict[str, Any]],
        substitutes: list[dict[str, Any]],
    ) -> None:
        """Replace only the starters and substitutes of a saved roster."""
        await self._run_mutation(
            lambda: (
                self.supabase.table(self.TABLE)
                .update({"starters": starters, "substitutes": substitutes})
                .eq("id", roster_id)
                .execute()
            ),
            operation_name="update_lineup (game_rosters)",
            invalidate=[OfflineCacheService.game_rosters_key(team_id)],
        )

    async def delete_game_roster(self, team_id: str, roster_id: str) -> None:
        await self._run_mutation(
            lambda: self.supabase.table(self.TABLE).delete().eq("id", roster_id).execute(),
            operation_name="delete_game_roster (game_rosters)",
            invalidate=[OfflineCacheService.game_rosters_key(team_id)],
        )
