"""Time source injected into every component so loops can run on a virtual clock."""

from datetime import datetime
from typing import Protocol

from .entities import utc_now


class Clock(Protocol):
    """Anything with a now() returning an aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return utc_now()
