"""World tracking: scoreboard listeners, first-world gating and commits."""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Optional

from modules.common.runtime import Scheduler

from . import client as gc
from .command_queue import CommandDrainer
from .events import EventBus, WorldChanged
from .scoreboard import DEFAULT_DENY_LIST, Scoreboard, WorldDenyList, interpret
from .state import AltRegistry, AltState

log = logging.getLogger("altsup.world")

__all__ = ["WorldTracker", "is_transition_message"]

INITIAL_SCAN_DELAY = 1.5

_TRANSITION_PATTERNS = (
    re.compile(r"teleport", re.IGNORECASE),
    re.compile(r"home", re.IGNORECASE),
    re.compile(r"moved you", re.IGNORECASE),
    re.compile(r"you (?:were|have been) (?:teleported|moved)", re.IGNORECASE),
    re.compile(r"now entering", re.IGNORECASE),
)

_SCOREBOARD_EVENTS = (
    gc.EVENT_SCOREBOARD_POSITION,
    gc.EVENT_SCOREBOARD_TITLE,
    gc.EVENT_SCORE_UPDATED,
    gc.EVENT_SCORE_REMOVED,
    gc.EVENT_SCOREBOARD_CREATED,
)


def is_transition_message(text: object) -> bool:
    line = str(text or "")
    return any(pattern.search(line) for pattern in _TRANSITION_PATTERNS)


class WorldTracker:
    """Infers and commits each alt's current world from its sidebar."""

    def __init__(
        self,
        registry: AltRegistry,
        *,
        scheduler: Scheduler,
        events: EventBus,
        drainer: CommandDrainer,
        persist: Callable[[int, str, int], Awaitable[Any]],
        deny: WorldDenyList = DEFAULT_DENY_LIST,
        return_command: str = "/home home",
        poll_interval: float = 60.0,
        debug_lines: bool = True,
        announce: Optional[Callable[[AltState, str], Awaitable[Any]]] = None,
    ) -> None:
        self._registry = registry
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self._events = events
        self._drainer = drainer
        self._persist = persist
        self.deny = deny
        self.return_command = return_command.strip()
        self.poll_interval = float(poll_interval)
        self.debug_lines = debug_lines
        self._announce = announce

    # ----- listeners -------------------------------------------------------

    def attach(self, alt_id: int, client: gc.GameClient) -> None:
        state = self._registry.get(alt_id)

        def on_scoreboard(event: str) -> Callable[..., None]:
            def handler(*args: Any) -> None:
                for arg in args:
                    if isinstance(arg, Scoreboard) and arg.is_sidebar:
                        state.sidebar = arg
                        break
                self._scheduler.spawn(self.compute(alt_id, event), name=f"world:{alt_id}")

            return handler

        for event in _SCOREBOARD_EVENTS:
            state.listeners.append(client.on(event, on_scoreboard(event)))
        state.listeners.append(client.on(gc.EVENT_CHAT, self._sniffer(alt_id)))
        self.schedule_scan(alt_id, INITIAL_SCAN_DELAY, "initial")

    def _sniffer(self, alt_id: int) -> Callable[..., None]:
        def handler(*args: Any) -> None:
            # messagestr passes (message, position, jsonMsg, sender, verified).
            text = str(args[0]) if args else ""
            if is_transition_message(text):
                log.info("chat transition", extra={"alt_id": alt_id, "chat": text})

        return handler

    # ----- compute/commit --------------------------------------------------

    def _current_sidebar(self, state: AltState) -> Optional[Scoreboard]:
        client = state.client
        if client is not None:
            board = client.sidebar()
            if board is not None:
                state.sidebar = board
                return board
        return state.sidebar

    async def compute(self, alt_id: int, why: str) -> Optional[str]:
        state = self._registry.get(alt_id)
        if not state.armed and not why.startswith("armed:"):
            return None
        try:
            lines, world = interpret(self._current_sidebar(state), self.deny)
        except Exception:
            log.warning("scoreboard interpretation failed", exc_info=True, extra={"alt_id": alt_id})
            return None

        if lines != state.last_lines:
            state.last_lines = lines
            if self.debug_lines:
                log.debug(
                    "sidebar changed",
                    extra={"alt_id": alt_id, "why": why, "lines": lines, "guess": world},
                )
        state.last_guess = world
        if world:
            try:
                await self.commit(alt_id, world, why)
            except Exception:
                log.exception("world commit failed", extra={"alt_id": alt_id, "world": world})
        return world

    async def commit(self, alt_id: int, world: str, why: str) -> bool:
        """Record ``world`` if it differs from the cached value."""

        state = self._registry.get(alt_id)
        if not world or state.world == world:
            return False

        if state.world is None:
            eligible_at = state.first_world_eligible_at
            if eligible_at is None or self._clock.now() < eligible_at:
                log.debug(
                    "first world ignored, too early",
                    extra={"alt_id": alt_id, "world": world, "why": why},
                )
                return False

        updated_at = int(self._clock.wall())
        state.world = world
        state.world_updated_at = updated_at
        state.last_known_world = world
        state.last_known_at = updated_at
        log.info("world changed", extra={"alt_id": alt_id, "world": world, "why": why})

        try:
            await self._persist(alt_id, world, updated_at)
        except Exception as exc:
            log.warning("world persist failed", extra={"alt_id": alt_id, "error": repr(exc)})

        if not state.announced_world:
            state.announced_world = True
            if self._announce is not None:
                self._scheduler.spawn(self._announce(state, world), name=f"announce:{alt_id}")

        self._events.publish(
            WorldChanged(guild_id=state.guild_id, alt_id=alt_id, label=state.label, world=world)
        )
        self.start_poller(alt_id)

        if not state.returned_to_base:
            state.returned_to_base = True
            if self.return_command:
                self._drainer.push(alt_id, self.return_command)
                self._drainer.drain(alt_id)
        return True

    # ----- arming, scans and polling --------------------------------------

    def arm(self, alt_id: int, reason: str) -> None:
        state = self._registry.get(alt_id)
        state.armed = True
        self._scheduler.spawn(self.compute(alt_id, f"armed:{reason}"), name=f"world-arm:{alt_id}")

    def schedule_scan(self, alt_id: int, delay: float, reason: str) -> None:
        state = self._registry.get(alt_id)

        def fire() -> Optional[Awaitable[Any]]:
            if not state.online:
                return None
            return self.compute(alt_id, f"scan:{reason}")

        state.track(self._scheduler.call_later(delay, fire, name=f"world-scan:{alt_id}"))

    def start_poller(self, alt_id: int) -> None:
        state = self._registry.get(alt_id)
        if state.poll_timer is not None and state.poll_timer.active():
            return

        async def poll() -> None:
            if state.online:
                await self.compute(alt_id, "poll")

        state.poll_timer = self._scheduler.every(
            seconds=self.poll_interval, name=f"world-poll:{alt_id}"
        ).do(poll)
        log.debug("world poller started", extra={"alt_id": alt_id, "interval": self.poll_interval})

    async def wait_for_first_world(self, alt_id: int, timeout: float, tick: float = 0.5) -> bool:
        state = self._registry.get(alt_id)
        deadline = self._clock.now() + timeout
        while self._clock.now() < deadline:
            if state.world:
                return True
            await self._clock.sleep(tick)
        return bool(state.world)
