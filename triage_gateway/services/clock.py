"""Time source for the queue and scheduler.

Everything that reads the current time or waits goes through a Clock so tests
can substitute a controllable fake.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time in a fixed timezone."""

    def __init__(self, tz=timezone.utc) -> None:
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(self.tz)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
