"""Time sources shared by the runtime scheduler and the alt runner."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol

__all__ = ["Clock", "SystemClock", "system_clock"]


class Clock(Protocol):
    """Minimal time source; every timer in the bot sleeps through one."""

    def now(self) -> float:
        """Return the current time in seconds (monotonic for SystemClock)."""
        ...

    def wall(self) -> float:
        """Return the current UNIX timestamp in seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def wall(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, float(seconds)))


system_clock = SystemClock()
