"""
Offline Cache Models.

``CacheEnvelope`` is the only on-disk format the data layer defines.  Each
cached collection is stored as one JSON document::

    {
      "writtenAt":  "<ISO-8601 write time>",
      "ttlMinutes": <int >= 0, 0 = never expires>,
      "data":       [ {...}, {...} ]
    }

Anything that does not validate into this shape is treated as corrupt.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


class CacheEnvelope(BaseModel):
    """Timestamp + TTL wrapper around a cached row set.

    Immutable once built; a new write replaces the whole envelope.

    Attributes
    ----------
    written_at:
        When the rows were fetched (timezone-aware; naive values are read
        as UTC).
    ttl_minutes:
        Freshness window in minutes.  ``0`` never expires; ``None`` (only
        possible for entries written by older clients) defers to the
        process-wide default.
    data:
        The cached rows, in the order the server returned them.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    written_at: datetime = Field(alias="writtenAt")
    ttl_minutes: Optional[int] = Field(default=None, alias="ttlMinutes", ge=0, strict=True)
    data: list[dict[str, Any]]

    @field_validator("written_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def age(self, now: datetime) -> timedelta:
        """Time elapsed between the write and *now*."""
        return now - self.written_at

    def is_fresh(
        self,
        now: datetime,
        default_ttl_minutes: int,
        max_age_minutes: Optional[int] = None,
    ) -> bool:
        """Apply the freshness rule shared by reads and the eviction pass.

        The effective TTL is *max_age_minutes* when given, else the
        envelope's own TTL, else *default_ttl_minutes*.  A TTL of ``0``
        is always fresh, a negative one never is; otherwise the entry
        expires once its age exceeds the TTL.
        """
        if max_age_minutes is not None:
            ttl = max_age_minutes
        elif self.ttl_minutes is not None:
            ttl = self.ttl_minutes
        else:
            ttl = default_ttl_minutes
        if ttl == 0:
            return True
        if ttl < 0:
            return False
        return self.age(now) <= timedelta(minutes=ttl)

    def to_json(self) -> str:
        """Serialise using the persisted field names."""
        return self.model_dump_json(by_alias=True)


class FetchResult(BaseModel, Generic[T]):
    """Outcome of a coordinated read.

    Attributes
    ----------
    items:
        The records, fresh from the server or restored from the offline
        cache.
    from_cache:
        ``True`` when the network was unreachable and the rows came from
        a previously cached fetch.
    cached_at:
        Write time of the cache entry that served the rows (``None`` for
        fresh results).
    """

    items: list[T]
    from_cache: bool = False
    cached_at: Optional[datetime] = None

    @property
    def is_stale(self) -> bool:
        """``True`` when the caller is looking at cached, possibly outdated rows."""
        return self.from_cache

    def __len__(self) -> int:
        return len(self.items)
