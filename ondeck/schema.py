"""
Local SQLite Schema Initialization.

Defines the schema of the on-device database and a single entry-point,
:func:`initialize_schema`, that creates it idempotently.  A
``schema_version`` row records the applied version so later changes can be
rolled forward with registered migrations.

The local database holds exactly one domain-agnostic table, ``secure_kv``:
the encrypted key/value medium behind the offline cache.  Roster data is
never stored in relational form on the device.

Adding a Migration
~~~~~~~~~~~~~~~~~~
1. Bump :data:`CURRENT_SCHEMA_VERSION`.
2. Update the DDL in :data:`_TABLE_DEFINITIONS` (fresh installs).
3. Register a ``_migrate_vN_to_vN+1()`` function in :data:`_MIGRATIONS`.

Usage::

    import sqlite3
    from ondeck.logger import StructuredLogger
    from ondeck.schema import initialize_schema

    conn = sqlite3.connect("ondeck_local.db")
    initialize_schema(conn, StructuredLogger(name="schema"))
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from ondeck.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 1

_TABLE_DEFINITIONS: list[str] = [
    # -- single-row version tracker -------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- AES-GCM encrypted key/value entries ----------------------------------
    """
    CREATE TABLE IF NOT EXISTS secure_kv (
        key TEXT PRIMARY KEY,
        ciphertext BLOB NOT NULL,
        nonce BLOB NOT NULL,
        tag BLOB NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

# version N -> callable upgrading N to N + 1
_MIGRATIONS: dict[int, Callable[[sqlite3.Connection], None]] = {}


def _get_version(conn: sqlite3.Connection) -> int:
    """Return the stored schema version, ``0`` for a fresh database."""
    try:
        row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    except sqlite3.OperationalError:
        return 0
    return int(row[0]) if row else 0


def _set_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET
            version = excluded.version,
            applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the local schema.

    Fresh databases get every table in one shot.  Existing databases only
    run the registered migrations above their stored version.  The whole
    upgrade runs in one transaction; on failure it is rolled back and the
    error re-raised so the next start retries.

    Parameters
    ----------
    conn:
        Open SQLite connection.
    logger:
        Structured logger for progress messages.
    """
    version = _get_version(conn)
    if version >= CURRENT_SCHEMA_VERSION:
        logger.debug("Local schema up to date (v%d).", version)
        return

    try:
        if version == 0:
            for ddl in _TABLE_DEFINITIONS:
                conn.execute(ddl)
        else:
            for step in range(version, CURRENT_SCHEMA_VERSION):
                migration = _MIGRATIONS.get(step)
                if migration is None:
                    raise RuntimeError(f"No migration registered for schema v{step}.")
                migration(conn)
        _set_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Local schema initialisation failed; rolled back.", exc_info=True)
        raise

    logger.info(
        "Local schema initialised: v%d -> v%d.", version, CURRENT_SCHEMA_VERSION,
    )
