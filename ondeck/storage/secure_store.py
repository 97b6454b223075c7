"""
Encrypted SQLite Key/Value Store.

The on-device medium behind the offline cache.  Cached rows contain
personal data (names, guardian e-mails), so every value is encrypted with
AES-256-GCM before it touches the disk.

Security model
--------------
- The encryption key is derived at runtime from machine identity
  (hostname + OS username) via PBKDF2-HMAC-SHA256 with a per-machine
  random salt.  The key is **never** persisted to disk.
- GCM provides confidentiality and integrity: a tampered or foreign row
  fails verification and surfaces as ``CorruptValueError``.
- If the salt file cannot be created the store refuses to operate
  (``OSError``) rather than degrading to a static salt.

Storage layout::

    secure_kv
    ├── key         TEXT PRIMARY KEY   (plaintext; keys are not sensitive)
    ├── ciphertext  BLOB
    ├── nonce       BLOB
    ├── tag         BLOB
    └── updated_at  TIMESTAMP
"""

from __future__ import annotations

import asyncio
import getpass
import os
import platform
import socket
import stat
import threading
from pathlib import Path
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from ondeck.database import DatabaseManager
from ondeck.logger import StructuredLogger
from ondeck.storage.kv_store import CorruptValueError


class SecureKeyValueStore:
    """``KeyValueStore`` persisting AES-GCM encrypted strings in SQLite.

    Blocking SQLite and crypto work runs in a worker thread via
    ``asyncio.to_thread`` while holding the database write lock, so the
    event loop never waits on disk.

    Parameters
    ----------
    db:
        An initialised ``DatabaseManager`` whose SQLite connection already
        carries the ``secure_kv`` table (see ``ondeck.schema``).
    logger:
        A ``StructuredLogger`` instance.
    salt_path:
        Location of the per-machine salt file.
    kdf_iterations:
        PBKDF2 iteration count.  Changing it makes existing entries
        undecryptable.
    """

    _PBKDF2_ITERATIONS: int = 600_000
    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        salt_path: Path,
        kdf_iterations: Optional[int] = None,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._salt_path: Path = Path(salt_path)
        self._iterations: int = kdf_iterations or self._PBKDF2_ITERATIONS
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # KeyValueStore protocol
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        """Return the decrypted value for *key*, or ``None`` when absent.

        Raises
        ------
        CorruptValueError
            The row exists but fails decryption or UTF-8 decoding.
        """
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)

    async def get_all_keys(self) -> list[str]:
        return await asyncio.to_thread(self._keys_sync)

    # ------------------------------------------------------------------
    # Blocking implementations (worker thread)
    # ------------------------------------------------------------------

    def _get_sync(self, key: str) -> Optional[str]:
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                "SELECT ciphertext, nonce, tag FROM secure_kv WHERE key = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None

        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=row["nonce"])
            plaintext: bytes = cipher.decrypt_and_verify(row["ciphertext"], row["tag"])
            return plaintext.decode("utf-8")
        except (ValueError, KeyError) as exc:
            # ValueError covers MAC check failure and UnicodeDecodeError.
            raise CorruptValueError(
                f"Stored value for '{key}' failed verification "
                "(corrupted data or machine identity changed)."
            ) from exc

    def _set_sync(self, key: str, value: str) -> None:
        cipher = AES.new(self._derive_key(), AES.MODE_GCM)
        ciphertext, tag = cipher.encrypt_and_digest(value.encode("utf-8"))
        with self._db.write_lock:
            self._db.sqlite.execute(
                """
                INSERT INTO secure_kv (key, ciphertext, nonce, tag)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    ciphertext = excluded.ciphertext,
                    nonce      = excluded.nonce,
                    tag        = excluded.tag,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, ciphertext, cipher.nonce, tag),
            )
            self._db.sqlite.commit()

    def _delete_sync(self, key: str) -> None:
        with self._db.write_lock:
            self._db.sqlite.execute("DELETE FROM secure_kv WHERE key = ?", (key,))
            self._db.sqlite.commit()

    def _keys_sync(self) -> list[str]:
        with self._db.write_lock:
            rows = self._db.sqlite.execute("SELECT key FROM secure_kv").fetchall()
        return [row["key"] for row in rows]

    # ------------------------------------------------------------------
    # Key material
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once per process) the 256-bit AES key.

        The key is deterministic for a given (hostname, OS username, salt)
        triple, so a database file copied to another machine is useless
        there.  The real entropy comes from the per-machine salt.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        with self._key_lock:
            if self._key is None:
                password: str = f"{socket.gethostname()}:{getpass.getuser()}"
                self._key = PBKDF2(
                    password=password,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        """Return the per-machine random salt, creating it on first run."""
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == self._SALT_LENGTH:
                return data
            # Wrong length: regenerate. Existing entries become corrupt
            # and are dropped by the cache on their next read.
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.", len(data),
            )

        salt: bytes = os.urandom(self._SALT_LENGTH)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        if platform.system() != "Windows":
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Per-machine store salt created at %s.", self._salt_path)
        return salt
