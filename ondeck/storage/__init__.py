"""Local persistence: the key/value boundary and its encrypted SQLite medium."""

from __future__ import annotations

from ondeck.storage.kv_store import CorruptValueError, KeyValueStore
from ondeck.storage.secure_store import SecureKeyValueStore

__all__ = ["CorruptValueError", "KeyValueStore", "SecureKeyValueStore"]
