"""Per-alt FIFO of outgoing chat commands with a minimum send gap."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from modules.common.runtime import Scheduler

from .errors import EmptyCommandError
from .state import AltRegistry, AltState

log = logging.getLogger("altsup.commands")

__all__ = ["CommandDrainer", "normalize_command"]

WINDOW_CLOSE_ATTEMPTS = 2
WINDOW_CLOSE_PAUSE = 0.15


def normalize_command(text: object) -> str:
    line = str(text or "").strip()
    if not line:
        raise EmptyCommandError()
    return line if line.startswith("/") else f"/{line}"


class CommandDrainer:
    """Sends queued commands one at a time, at most one loop per alt."""

    def __init__(self, registry: AltRegistry, *, scheduler: Scheduler, chat_gap: float) -> None:
        self._registry = registry
        self._scheduler = scheduler
        self._clock = scheduler.clock
        self.chat_gap = float(chat_gap)

    def push(self, alt_id: int, text: object) -> str:
        line = normalize_command(text)
        self._registry.get(alt_id).commands.append(line)
        return line

    def drain(self, alt_id: int) -> Optional[asyncio.Task]:
        """Start the drain loop unless one is already running."""

        state = self._registry.get(alt_id)
        if not state.online or state.sending:
            return None
        state.sending = True
        return self._scheduler.spawn(self._run(state), name=f"drain:{alt_id}")

    def drain_later(self, alt_id: int, delay: float) -> None:
        state = self._registry.get(alt_id)
        state.track(
            self._scheduler.call_later(delay, lambda: self.drain(alt_id), name=f"drain-later:{alt_id}")
        )

    def discard(self, alt_id: int) -> int:
        state = self._registry.get(alt_id)
        dropped = len(state.commands)
        state.commands.clear()
        state.generation += 1
        return dropped

    async def _close_windows(self, state: AltState) -> None:
        client = state.client
        for _ in range(WINDOW_CLOSE_ATTEMPTS):
            if client is None:
                return
            try:
                if client.current_window is None:
                    return
                log.debug("closing open window before chat", extra={"alt_id": state.alt_id})
                client.close_window()
            except Exception:
                log.debug("window close failed", exc_info=True, extra={"alt_id": state.alt_id})
            await self._clock.sleep(WINDOW_CLOSE_PAUSE)

    async def _run(self, state: AltState) -> None:
        generation = state.generation
        try:
            while state.online and state.commands and state.generation == generation:
                line = state.commands.popleft()
                await self._close_windows(state)

                wait = state.last_chat_at + self.chat_gap - self._clock.now()
                if state.last_chat_at and wait > 0:
                    await self._clock.sleep(wait)

                if state.generation != generation:
                    log.debug("queue discarded mid-drain", extra={"alt_id": state.alt_id, "command": line})
                    break
                client = state.client
                if client is None or not client.is_spawned:
                    # Connection dropped while waiting; keep the command.
                    state.commands.appendleft(line)
                    break
                try:
                    client.chat(line)
                    log.info("command sent", extra={"alt_id": state.alt_id, "command": line})
                except Exception as exc:
                    log.warning(
                        "chat failed",
                        extra={"alt_id": state.alt_id, "command": line, "error": repr(exc)},
                    )
                state.last_chat_at = self._clock.now()
        finally:
            state.sending = False
            if state.generation != generation and state.commands:
                self.drain(state.alt_id)
