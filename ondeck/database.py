"""
Connections.

``DatabaseManager`` holds the two handles the rest of the package talks
through and nothing else; queries live in the repositories.

Remote
    The async Supabase client (PostgREST, RPC, auth, realtime).  It is
    optional.  A process started without credentials keeps working from
    the offline cache, and every remote call reports ``ConnectivityError``.

Local
    A SQLite file in WAL mode holding the encrypted key/value table.

Built once at startup and injected::

    db = await DatabaseManager.create(
        config.SUPABASE_URL,
        config.SUPABASE_ANON_KEY.get_secret_value(),
        Path(config.LOCAL_STORE_PATH),
        get_logger("database"),
    )
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Optional

from supabase import AsyncClient, acreate_client

from ondeck.errors import ConnectivityError
from ondeck.logger import StructuredLogger

_OFFLINE_MESSAGE = "No remote service configured; running from the offline cache only."


def open_local_database(path: Path, logger: StructuredLogger) -> sqlite3.Connection:
    """Open *path* for use from worker threads, with ``sqlite3.Row`` rows.

    Raises
    ------
    PermissionError
        The file or its directory cannot be opened; the message names the
        path so it can be shown as is.
    """
    try:
        conn = sqlite3.connect(str(path), check_same_thread=False)
    except PermissionError as exc:
        message = f"Local database '{path}' is not accessible (read-only or locked)."
        logger.error(message)
        raise PermissionError(message) from exc
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    logger.info("Local database ready at %s", path)
    return conn


class DatabaseManager:
    """Remote client plus local SQLite connection.

    Parameters
    ----------
    sqlite_path:
        Location of the local database file (created when missing).
    logger:
        A ``StructuredLogger`` instance.
    supabase:
        A ready async client, or ``None`` for offline mode.  See
        :meth:`create`.
    """

    def __init__(
        self,
        sqlite_path: Path,
        logger: StructuredLogger,
        supabase: Optional[AsyncClient] = None,
    ) -> None:
        self._logger = logger
        self._remote = supabase
        self._lock = threading.RLock()
        self._local = open_local_database(sqlite_path, logger)
        self._open = True

    @classmethod
    async def create(
        cls,
        supabase_url: str,
        supabase_key: str,
        sqlite_path: Path,
        logger: StructuredLogger,
    ) -> "DatabaseManager":
        """Connect to Supabase when credentials are present.

        Malformed credentials are logged and the manager starts offline.
        """
        remote: Optional[AsyncClient] = None
        if not (supabase_url and supabase_key):
            logger.warning(_OFFLINE_MESSAGE)
        else:
            try:
                remote = await acreate_client(supabase_url, supabase_key)
            except (ValueError, TypeError) as exc:
                logger.warning("Invalid Supabase credentials (%s); starting offline.", exc)
            else:
                logger.info("Connected to Supabase at %s", supabase_url)
        return cls(sqlite_path, logger, remote)

    @property
    def supabase(self) -> AsyncClient:
        """The remote client; ``ConnectivityError`` in offline mode."""
        if self._remote is None:
            raise ConnectivityError(_OFFLINE_MESSAGE)
        return self._remote

    @property
    def is_online(self) -> bool:
        return self._remote is not None

    @property
    def sqlite(self) -> sqlite3.Connection:
        return self._local

    @property
    def write_lock(self) -> threading.RLock:
        """Serialises SQLite use; store operations run on arbitrary worker threads."""
        return self._lock

    async def aclose(self) -> None:
        """Drop realtime channels, then close the local database.  Idempotent."""
        if self._open and self._remote is not None:
            try:
                await self._remote.remove_all_channels()
            except Exception as exc:
                self._logger.warning("Realtime channels not released cleanly: %s", exc)
        self.close()

    def close(self) -> None:
        """Close the local database.  Later calls do nothing."""
        with self._lock:
            if not self._open:
                return
            self._open = False
            self._local.close()
        self._logger.info("Local database closed.")
