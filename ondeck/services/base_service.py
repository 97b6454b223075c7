"""Common parent of the long-lived services (cache, identity, session, auth)."""

from __future__ import annotations

from ondeck.logger import StructuredLogger


class BaseService:
    """Holds the injected logger; subclasses add their own collaborators."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger
