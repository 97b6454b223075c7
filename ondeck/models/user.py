"""
User Profile Model.

Mirrors ``public.users``: the app-level profile keyed by its own ``id``
and linked to the auth principal through ``user_id``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, model_validator

USER_COLUMNS: str = (
    "id, user_id, first_name, last_name, nickname, "
    "athlete_id, email, organization, created_at"
)

_REQUIRED_TEXT: tuple[str, ...] = ("id", "user_id", "first_name", "last_name", "email")


def split_legacy_name(name: str) -> tuple[str, str]:
    """Split a legacy single ``name`` column on the first space."""
    name = name.strip()
    first, _, last = name.partition(" ")
    return first, last.strip()


class AppUser(BaseModel):
    """Represents a user profile.

    Older rows only carry the combined ``name`` column; ``first_name`` and
    ``last_name`` are derived from it when both are empty.
    """

    id: str = ""
    user_id: str = ""
    first_name: str = ""
    last_name: str = ""
    nickname: Optional[str] = None
    athlete_id: Optional[str] = None
    email: str = ""
    organization: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @model_validator(mode="before")
    @classmethod
    def _legacy_name(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = {
            **data,
            **{key: "" for key in _REQUIRED_TEXT if data.get(key) is None},
        }
        if not data["first_name"] and not data["last_name"]:
            data["first_name"], data["last_name"] = split_legacy_name(data.get("name") or "")
        return data

    @property
    def name(self) -> str:
        return f"{self.first_name.strip()} {self.last_name.strip()}".strip()
