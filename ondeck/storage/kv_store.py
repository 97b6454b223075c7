"""
Persistent Key/Value Storage Boundary.

The offline cache only ever talks to storage through this protocol.
Values are opaque strings; the cache owns all (de)serialisation.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class CorruptValueError(ValueError):
    """A stored value exists but cannot be decoded back into a string.

    Raised by ``get`` when, for example, an encrypted value fails its
    integrity check.  Callers treat the entry as corrupt.
    """


@runtime_checkable
class KeyValueStore(Protocol):
    """Async key/value medium.

    Implementations raise ``OSError`` (or ``sqlite3.Error``) for medium
    failures and ``CorruptValueError`` for unreadable values; they never
    interpret the value.
    """

    async def get(self, key: str) -> str | None: ...  # noqa: E704

    async def set(self, key: str, value: str) -> None: ...  # noqa: E704

    async def delete(self, key: str) -> None: ...  # noqa: E704

    async def get_all_keys(self) -> list[str]: ...  # noqa: E704
