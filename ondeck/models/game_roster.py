"""
Game Roster Model.

A saved line-up for one game: the starters and substitutes are stored as
JSONB arrays of player snapshots on ``public.game_rosters``.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

GAME_ROSTER_COLUMNS: str = (
    "id, team_id, title, game_date, starter_slots, starters, "
    "substitutes, created_by, created_at"
)


class GameRoster(BaseModel):
    """A saved game line-up."""

    id: str = ""
    team_id: str = ""
    title: str = ""
    game_date: Optional[date] = None
    starter_slots: int = 5
    starters: list[dict[str, Any]] = Field(default_factory=list)
    substitutes: list[dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def player_count(self) -> int:
        return len(self.starters) + len(self.substitutes)
