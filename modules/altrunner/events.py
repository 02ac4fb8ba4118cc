"""Typed notifications published by the alt runner."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Optional, Type, TypeVar

log = logging.getLogger("altsup.events")

__all__ = [
    "AltStatusChanged",
    "DeviceCodeIssued",
    "EventBus",
    "WorldChanged",
]


@dataclass(frozen=True)
class WorldChanged:
    guild_id: Optional[int]
    alt_id: int
    label: Optional[str]
    world: str


@dataclass(frozen=True)
class DeviceCodeIssued:
    guild_id: Optional[int]
    alt_id: int
    user_code: str
    verification_uri: str
    expires_in: int


@dataclass(frozen=True)
class AltStatusChanged:
    alt_id: int
    status: str


E = TypeVar("E")
Handler = Callable[[Any], Any]


class EventBus:
    """Publish/subscribe channel keyed by payload type.

    Handlers may be plain callables or coroutine functions; coroutine
    handlers are scheduled on the running loop. A failing handler is logged
    and never affects the publisher.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[type, list[Handler]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(self._guard(result, event))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
            except Exception:
                log.exception("event handler failed", extra={"event": type(event).__name__})

    async def _guard(self, coro: Any, event: object) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("event handler failed", extra={"event": type(event).__name__})

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled so far."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
