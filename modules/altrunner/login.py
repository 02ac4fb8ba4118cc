"""Global serialized login queue.

Every connection attempt across all alts goes through one queue so the
server never sees a burst of logins. The fixed gap after each attempt is the
main defence against "logging in too fast" kicks.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from modules.common.runtime import Scheduler

from .state import AltRegistry

log = logging.getLogger("altsup.login")

__all__ = ["CooldownWatermarks", "LoginOutcome", "LoginScheduler"]

OUTCOME_STARTED = "started"
OUTCOME_ALREADY_ONLINE = "already-online"
OUTCOME_ERROR = "error"
OUTCOME_CANCELLED = "cancelled"

# Extra randomised wait added on top of an active cooldown.
COOLDOWN_JITTER = (0.3, 0.7)
ALREADY_ONLINE_PAUSE = 0.3


@dataclass(frozen=True)
class LoginOutcome:
    status: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status in (OUTCOME_STARTED, OUTCOME_ALREADY_ONLINE)


class CooldownWatermarks:
    """Process-wide "do not log in before" timestamps.

    Written by any alt's disconnect handler, read before every attempt.
    Values only move forward.
    """

    def __init__(self) -> None:
        self.network_until = 0.0
        self.registration_until = 0.0

    def raise_network(self, until: float) -> None:
        self.network_until = max(self.network_until, until)

    def raise_registration(self, until: float) -> None:
        self.registration_until = max(self.registration_until, until)

    def wait_until(self, alt_cooldown: float = 0.0) -> float:
        return max(self.network_until, self.registration_until, alt_cooldown)


class LoginScheduler:
    def __init__(
        self,
        registry: AltRegistry,
        connect: Callable[[int], Awaitable[Any]],
        *,
        scheduler: Scheduler,
        cooldowns: CooldownWatermarks,
        min_gap: float,
        jitter: float,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._connect = connect
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._cooldowns = cooldowns
        self._min_gap = float(min_gap)
        self._jitter = max(0.0, float(jitter))
        self._rng = rng or random.Random()
        self._queue: Deque[int] = deque()
        self._waiters: Dict[int, asyncio.Future] = {}
        self._task: Optional[asyncio.Task] = None

    def pending(self) -> list[int]:
        return list(self._queue)

    def is_queued(self, alt_id: int) -> bool:
        return alt_id in self._waiters

    def submit(self, alt_id: int) -> asyncio.Future:
        """Queue ``alt_id`` (once) and return the future of its outcome."""

        future = self._waiters.get(alt_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._waiters[alt_id] = future
            self._queue.append(alt_id)
            log.debug("login queued", extra={"alt_id": alt_id, "depth": len(self._queue)})
        if self._task is None or self._task.done():
            self._task = self._scheduler.spawn(self._process(), name="login_queue")
        return future

    async def enqueue(self, alt_id: int) -> LoginOutcome:
        """Queue a login and wait for its outcome; concurrent callers share it."""

        return await asyncio.shield(self.submit(alt_id))

    def discard(self, alt_id: int) -> bool:
        """Drop a queued or in-flight login; its waiters see "cancelled"."""

        future = self._waiters.pop(alt_id, None)
        if future is None:
            return False
        try:
            self._queue.remove(alt_id)
        except ValueError:
            pass
        self._resolve(future, LoginOutcome(OUTCOME_CANCELLED))
        return True

    def _still_wanted(self, alt_id: int, future: Optional[asyncio.Future]) -> bool:
        return future is not None and self._waiters.get(alt_id) is future

    def _finish(self, alt_id: int, future: Optional[asyncio.Future], outcome: LoginOutcome) -> None:
        if self._still_wanted(alt_id, future):
            del self._waiters[alt_id]
        self._resolve(future, outcome)

    async def _process(self) -> None:
        while self._queue:
            alt_id = self._queue.popleft()
            # The waiter stays registered while the attempt is in flight so
            # a stop can still cancel it and new callers share its outcome.
            future = self._waiters.get(alt_id)
            state = self._registry.get(alt_id)

            now = self._clock.now()
            wait_until = self._cooldowns.wait_until(state.cooldown_until)
            if wait_until > now:
                delay = wait_until - now + self._rng.uniform(*COOLDOWN_JITTER)
                log.info(
                    "delaying login due to cooldowns",
                    extra={"alt_id": alt_id, "delay": round(delay, 3)},
                )
                await self._clock.sleep(delay)

            if not self._still_wanted(alt_id, future):
                log.info("login cancelled before connect", extra={"alt_id": alt_id})
                continue

            if state.online:
                log.info("already online, skipping connect", extra={"alt_id": alt_id})
                self._finish(alt_id, future, LoginOutcome(OUTCOME_ALREADY_ONLINE))
                await self._clock.sleep(ALREADY_ONLINE_PAUSE)
                continue

            try:
                await self._connect(alt_id)
            except asyncio.CancelledError:
                self._finish(alt_id, future, LoginOutcome(OUTCOME_CANCELLED))
                raise
            except Exception as exc:
                log.warning(
                    "login attempt failed",
                    extra={"alt_id": alt_id, "error": repr(exc)},
                )
                self._finish(alt_id, future, LoginOutcome(OUTCOME_ERROR, error=exc))
            else:
                self._finish(alt_id, future, LoginOutcome(OUTCOME_STARTED))

            await self._clock.sleep(self._min_gap + self._rng.uniform(0.0, self._jitter))

    @staticmethod
    def _resolve(future: Optional[asyncio.Future], outcome: LoginOutcome) -> None:
        if future is not None and not future.done():
            future.set_result(outcome)
