"""
Clock abstraction used for timestamping and surge pricing.

Services never call datetime.now() directly; they ask a Clock so tests can pin
the hour and weekday deterministically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything with a single `now()` accessor returning an aware datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock pinned to one instant; `advance_to` moves it."""

    def __init__(self, instant: datetime):
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def advance_to(self, instant: datetime) -> None:
        self._instant = instant


system_clock = SystemClock()
