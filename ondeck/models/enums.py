"""
Shared Enumerations for On Deck Models.

StrEnum values compare equal to their string equivalents, so rows coming
back from Supabase (plain strings) can be compared without conversion.
"""

from __future__ import annotations
from enum import StrEnum


class PlayerStatus(StrEnum):
    """Attendance status of a player on a roster."""

    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class TeamRole(StrEnum):
    """Membership role of a user on a team.

    Owners, coaches and team managers can manage the roster.  Ownership is
    only ever moved with ``transfer_ownership``.
    """

    OWNER = "owner"
    COACH = "coach"
    PLAYER = "player"
    TEAM_PARENT = "team_parent"
    TEAM_MANAGER = "team_manager"


class SessionEvent(StrEnum):
    """Auth state transitions emitted by the Supabase auth client."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"
    MFA_CHALLENGE_VERIFIED = "MFA_CHALLENGE_VERIFIED"
