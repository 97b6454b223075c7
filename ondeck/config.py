"""
Application Configuration.

Pydantic Settings model for the On Deck roster data layer.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, SecretStr, model_validator


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")

    # --- Offline cache ---
    # False on platforms without a secure on-device medium: the cache then
    # degrades to "always fetch fresh" instead of persisting roster PII.
    CACHE_ENABLED: bool = True
    CACHE_KEY_PREFIX: str = "aod_cache_"
    CACHE_DEFAULT_TTL_MINUTES: int = Field(default=60, ge=0)

    # --- Local secure store ---
    LOCAL_STORE_PATH: str = "ondeck_local.db"
    SECURE_STORE_SALT_PATH: str = Field(
        default_factory=lambda: str(Path.home() / ".ondeck_store_salt"),
    )

    # --- Data access ---
    IDENTITY_RETRY_DELAY_S: float = Field(default=0.8, ge=0.0)
    PLAYERS_PAGE_SIZE: int = Field(default=25, gt=0)

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "ondeck.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing,
        so operators get a hint that the client runs on placeholder values.
        """
        _log = logging.getLogger("ondeck.config")

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty. Remote reads will fail over to the "
                "offline cache and writes will be rejected."
            )

        if not self.CACHE_ENABLED:
            _log.warning(
                "Offline cache disabled. Every read goes to the network."
            )

        return self

    @property
    def log_level(self) -> int:
        """Numeric ``logging`` level for ``LOG_LEVEL`` (INFO when unknown)."""
        level = logging.getLevelName(self.LOG_LEVEL.upper())
        return level if isinstance(level, int) else logging.INFO


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the fast path skips the lock while
    first initialisation stays thread-safe.  Prefer constructor injection
    of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
