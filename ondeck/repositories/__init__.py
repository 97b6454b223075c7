"""
Repository Layer.

One repository per remote collection.  Every read goes to the server
first and falls back to the offline cache only when the server is
unreachable; every write is online-only.
"""

from __future__ import annotations

from ondeck.repositories.base_repository import BaseRepository
from ondeck.repositories.game_roster_repository import GameRosterRepository
from ondeck.repositories.player_repository import PlayerRepository
from ondeck.repositories.team_repository import TeamRepository
from ondeck.repositories.user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "GameRosterRepository",
    "PlayerRepository",
    "TeamRepository",
    "UserRepository",
]
