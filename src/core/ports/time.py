"""
Time port.

Protocol-based interface for the current time so that dedupe windows,
cache expiry and query periods can be driven by a fake clock in tests.

Key requirements:
- All timestamps are timezone-aware UTC
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TimePort(Protocol):
    """Time provider interface."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        ...
