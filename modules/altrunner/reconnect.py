"""Reconnect policy applied after a disconnect or kick."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from modules.common.runtime import Scheduler

from .login import CooldownWatermarks
from .state import AltRegistry

log = logging.getLogger("altsup.reconnect")

__all__ = [
    "BackoffPolicy",
    "DisconnectKind",
    "ReconnectSupervisor",
    "classify_disconnect",
    "reason_text",
]

_TOO_FAST_RE = re.compile(r"logging in too fast", re.IGNORECASE)
_NETWORK_RE = re.compile(r"unable to register you with the network", re.IGNORECASE)


class DisconnectKind:
    NORMAL = "normal"
    LOGIN_THROTTLED = "login-throttled"
    NETWORK_LIMITED = "network-limited"


def reason_text(reason: Any) -> str:
    """Flatten a kick/end reason (string, chat component, dict) to text."""

    if not reason:
        return ""
    if isinstance(reason, str):
        return reason
    if isinstance(reason, dict):
        for key in ("text", "translate"):
            if reason.get(key):
                return str(reason[key])
        extra = reason.get("extra")
        if isinstance(extra, list):
            return "".join(reason_text(part) for part in extra)
    try:
        return str(reason)
    except Exception:  # pragma: no cover - exotic payloads
        return ""


def classify_disconnect(reason: Any) -> str:
    text = reason_text(reason)
    if _NETWORK_RE.search(text):
        return DisconnectKind.NETWORK_LIMITED
    if _TOO_FAST_RE.search(text):
        return DisconnectKind.LOGIN_THROTTLED
    return DisconnectKind.NORMAL


@dataclass(frozen=True)
class BackoffPolicy:
    minimum: float
    maximum: float
    fixed: bool = True
    factor: float = 1.5

    def next(self, current: float) -> float:
        if self.fixed:
            return self.minimum
        grown = max(self.minimum, round(current * self.factor, 3))
        return min(grown, max(self.maximum, self.minimum))


class ReconnectSupervisor:
    """Schedules re-enqueues through the login queue after disconnects."""

    def __init__(
        self,
        registry: AltRegistry,
        requeue: Callable[[int], Any],
        *,
        scheduler: Scheduler,
        cooldowns: CooldownWatermarks,
        policy: BackoffPolicy,
        enabled: bool = True,
        jitter: float = 0.0,
        login_throttle: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._requeue = requeue
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._cooldowns = cooldowns
        self.policy = policy
        self.enabled = enabled
        self._jitter = max(0.0, float(jitter))
        self._login_throttle = float(login_throttle)
        self._rng = rng or random.Random()

    def apply_rate_limit(self, alt_id: int, reason: Any) -> str:
        """Raise cooldown watermarks for rate-limit kicks; return the kind."""

        kind = classify_disconnect(reason)
        now = self._clock.now()
        if kind == DisconnectKind.LOGIN_THROTTLED:
            self._cooldowns.raise_registration(now + self._login_throttle)
        elif kind == DisconnectKind.NETWORK_LIMITED:
            until = now + self.policy.minimum
            self._cooldowns.raise_network(until)
            self._cooldowns.raise_registration(until)
            state = self._registry.get(alt_id)
            state.cooldown_until = max(state.cooldown_until, until)
        if kind != DisconnectKind.NORMAL:
            log.warning(
                "rate limit signalled by server",
                extra={"alt_id": alt_id, "kind": kind, "reason": reason_text(reason)},
            )
        return kind

    def schedule(self, alt_id: int, delay_override: Optional[float] = None) -> Optional[float]:
        """Schedule a re-enqueue; returns the delay or ``None`` if suppressed."""

        state = self._registry.get(alt_id)
        if not self.enabled or state.awaiting_device:
            log.debug(
                "reconnect suppressed",
                extra={"alt_id": alt_id, "awaiting_device": state.awaiting_device},
            )
            return None

        if delay_override is not None:
            base = float(delay_override)
        else:
            base = state.backoff or self.policy.minimum
        remaining = self._cooldowns.wait_until(state.cooldown_until) - self._clock.now()
        if remaining > 0:
            base = max(base, remaining)

        delay = base + self._rng.uniform(0.0, self._jitter)
        state.backoff = self.policy.next(state.backoff or self.policy.minimum)

        self.cancel(alt_id)
        state.reconnect_timer = self._scheduler.call_later(
            delay, lambda: self._fire(alt_id), name=f"reconnect:{alt_id}"
        )
        log.info("reconnect scheduled", extra={"alt_id": alt_id, "delay": round(delay, 3)})
        return delay

    def _fire(self, alt_id: int) -> Any:
        state = self._registry.get(alt_id)
        state.reconnect_timer = None
        return self._requeue(alt_id)

    def cancel(self, alt_id: int) -> None:
        state = self._registry.get(alt_id)
        if state.reconnect_timer is not None:
            state.reconnect_timer.cancel()
            state.reconnect_timer = None

    def pending(self, alt_id: int) -> bool:
        state = self._registry.peek(alt_id)
        return bool(state and state.reconnect_timer and state.reconnect_timer.active())
