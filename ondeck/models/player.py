"""
Player Model.

Mirrors a row of ``public.players``.  Rows from the server, from the
offline cache and from realtime snapshots all pass through
``Player.model_validate`` so every source yields the same record shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator

from ondeck.models.enums import PlayerStatus

# Columns fetched from public.players.  Keep in sync with the table; an
# explicit list instead of '*' keeps the payload small.
PLAYER_COLUMNS: str = (
    "id, team_id, user_id, name, athlete_id, athlete_email, "
    "guardian_email, grade, grade_updated_at, jersey_number, "
    "nickname, position, status, created_at"
)

# Fields a client may write.  ``id`` and ``created_at`` are server-owned.
_WRITABLE_FIELDS: frozenset[str] = frozenset({
    "team_id",
    "name",
    "athlete_id",
    "athlete_email",
    "guardian_email",
    "grade",
    "jersey_number",
    "nickname",
    "position",
    "status",
})


class Player(BaseModel):
    """A player on a team roster.

    ``status`` is kept as a plain string so an attendance value added on
    the server does not make the whole roster unreadable; known values are
    listed in ``PlayerStatus``.
    """

    id: str = ""
    team_id: str = ""
    user_id: Optional[str] = None
    name: str = ""
    athlete_id: Optional[str] = None
    athlete_email: Optional[str] = None
    guardian_email: Optional[str] = None
    grade: Optional[str] = None
    grade_updated_at: Optional[datetime] = None
    jersey_number: Optional[str] = None
    nickname: Optional[str] = None
    position: Optional[str] = None
    status: str = PlayerStatus.PRESENT
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("jersey_number", "grade", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        # Stored as integers on some rows, text on others.
        return None if value is None else str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _default_status(cls, value: Any) -> str:
        return value or PlayerStatus.PRESENT

    # -- Serialisation ---------------------------------------------------------

    def to_row(self) -> dict[str, Any]:
        """Return the writable columns for an INSERT or UPDATE."""
        return self.model_dump(mode="json", include=set(_WRITABLE_FIELDS))

    # -- Display helpers -------------------------------------------------------

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.nickname})" if self.nickname else self.name

    @property
    def display_jersey(self) -> str:
        return self.jersey_number or "-"

    @property
    def status_label(self) -> str:
        return self.status[:1].upper() + self.status[1:]
