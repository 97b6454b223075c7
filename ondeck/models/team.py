"""
Team Models.

``TeamMembership`` is one entry of the caller's team list (team row plus
the caller's role on it).  ``TeamMember`` is one row of a team's member
list with the joined user profile.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, model_validator

from ondeck.models.enums import TeamRole
from ondeck.models.user import split_legacy_name

TEAM_COLUMNS: str = "id, team_name, sport, sport_id, created_at"

# Caller's memberships with the team row joined in one round-trip.
MEMBERSHIP_COLUMNS: str = f"team_id, role, player_id, teams({TEAM_COLUMNS})"

# Team members with a joined users sub-select.
TEAM_MEMBER_COLUMNS: str = (
    "id, team_id, user_id, role, player_id, "
    "users(first_name, last_name, name, email, organization)"
)

_ROLE_LABELS: dict[str, str] = {
    TeamRole.OWNER: "Owner",
    TeamRole.COACH: "Coach",
    TeamRole.PLAYER: "Player",
    TeamRole.TEAM_PARENT: "Team Parent",
    TeamRole.TEAM_MANAGER: "Team Manager",
}

_ROSTER_MANAGERS: frozenset[str] = frozenset({
    TeamRole.OWNER,
    TeamRole.COACH,
    TeamRole.TEAM_MANAGER,
})


def role_label(role: str) -> str:
    """Human label for a membership role; unknown roles are capitalised."""
    if role in _ROLE_LABELS:
        return _ROLE_LABELS[role]
    if not role:
        return "Unknown"
    return role[:1].upper() + role[1:]


class Team(BaseModel):
    """A row of ``public.teams``."""

    id: str
    team_name: str = ""
    sport: Optional[str] = None
    sport_id: Optional[str] = None
    created_at: Optional[datetime] = None


class TeamMembership(BaseModel):
    """A team the signed-in user belongs to, with their role on it."""

    team: Team
    role: str
    player_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TeamMembership":
        """Build from a ``team_members`` row with the ``teams`` join."""
        return cls(
            team=Team.model_validate(row["teams"]),
            role=row.get("role") or TeamRole.PLAYER,
            player_id=row.get("player_id"),
        )

    @property
    def team_id(self) -> str:
        return self.team.id

    @property
    def is_owner(self) -> bool:
        return self.role == TeamRole.OWNER

    @property
    def is_coach(self) -> bool:
        return self.role in (TeamRole.OWNER, TeamRole.COACH)

    @property
    def is_player(self) -> bool:
        return self.role == TeamRole.PLAYER


class TeamMember(BaseModel):
    """A member of a team with the denormalised user profile."""

    id: str = ""
    team_id: str = ""
    user_id: str = ""
    role: str = TeamRole.PLAYER
    player_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    organization: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_user(cls, data: Any) -> Any:
        # Shape: { id, team_id, user_id, role, player_id,
        #          users: { first_name, last_name, name, email, organization } }
        if not isinstance(data, dict) or "users" not in data:
            return data
        user = data.get("users") or {}
        first = user.get("first_name") or ""
        last = user.get("last_name") or ""
        if not first and not last:
            first, last = split_legacy_name(user.get("name") or "")
        flat = {key: value for key, value in data.items() if key != "users"}
        flat.update(
            first_name=first,
            last_name=last,
            email=user.get("email") or "",
            organization=user.get("organization"),
        )
        if not flat.get("role"):
            flat["role"] = TeamRole.PLAYER
        return flat

    @property
    def display_name(self) -> str:
        """First + last name, falling back to the e-mail address."""
        full = f"{self.first_name.strip()} {self.last_name.strip()}".strip()
        return full or self.email

    @property
    def role_label(self) -> str:
        return role_label(self.role)

    @property
    def can_manage_roster(self) -> bool:
        return self.role in _ROSTER_MANAGERS

    @property
    def is_owner(self) -> bool:
        return self.role == TeamRole.OWNER
