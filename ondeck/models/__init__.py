"""
Data Models Package.

Re-exports the Pydantic models so callers can write::

    from ondeck.models import Player, GameRoster, TeamMembership, CacheEnvelope
"""

from __future__ import annotations

from ondeck.models.auth_models import AuthErrorCode, AuthResult, ValidationResult
from ondeck.models.cache_models import CacheEnvelope, FetchResult
from ondeck.models.enums import PlayerStatus, SessionEvent, TeamRole
from ondeck.models.game_roster import GameRoster
from ondeck.models.player import Player
from ondeck.models.team import Team, TeamMember, TeamMembership
from ondeck.models.user import AppUser

__all__ = [
    "AppUser",
    "AuthErrorCode",
    "AuthResult",
    "CacheEnvelope",
    "FetchResult",
    "GameRoster",
    "Player",
    "PlayerStatus",
    "SessionEvent",
    "Team",
    "TeamMember",
    "TeamMembership",
    "TeamRole",
    "ValidationResult",
]
