"""Shared utilities for the On Deck data layer."""

from ondeck.utils.clock import Clock, SystemClock

__all__ = ["Clock", "SystemClock"]
