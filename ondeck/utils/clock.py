"""
Clock abstractions.

Cache freshness and live-view ordering never read the wall clock
directly; they receive a ``Clock`` so TTL behaviour can be pinned in
tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """A source of timezone-aware time."""

    def now(self) -> datetime: ...  # noqa: E704


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Clock that returns the current system time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
