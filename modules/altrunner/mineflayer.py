"""GameClient adapter over the mineflayer Node package.

Requires the optional ``javascript`` (JSPyBridge) dependency and a Node
runtime with ``mineflayer`` installed. Bridge callbacks arrive on a worker
thread and are re-dispatched onto the asyncio loop that created the client.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Callable, Optional

from . import client as gc
from .scoreboard import Scoreboard, ScoreboardLine

log = logging.getLogger("altsup.mineflayer")

__all__ = ["MineflayerClient", "create_mineflayer_client"]

_JS_EVENTS = {
    gc.EVENT_SPAWN: "spawn",
    gc.EVENT_RESPAWN: "respawn",
    gc.EVENT_KICKED: "kicked",
    gc.EVENT_END: "end",
    gc.EVENT_ERROR: "error",
    gc.EVENT_CHAT: "messagestr",
    gc.EVENT_SCOREBOARD_POSITION: "scoreboardPosition",
    gc.EVENT_SCOREBOARD_TITLE: "scoreboardTitleChanged",
    gc.EVENT_SCORE_UPDATED: "scoreUpdated",
    gc.EVENT_SCORE_REMOVED: "scoreRemoved",
    gc.EVENT_SCOREBOARD_CREATED: "scoreboardCreated",
}


def _text_of(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return str(value.toString())
    except Exception:
        return str(value)


def snapshot_scoreboard(js_board: Any, position: Any = None) -> Optional[Scoreboard]:
    """Copy a mineflayer ScoreBoard into a plain :class:`Scoreboard`."""

    if js_board is None:
        return None
    try:
        items = []
        for item in js_board.items or []:
            text = _text_of(item.displayName) or _text_of(item.name)
            items.append(ScoreboardLine(text=text, score=int(item.value or 0)))
        if position is None:
            position = getattr(js_board, "position", None)
        return Scoreboard(
            name=_text_of(js_board.name),
            title=_text_of(js_board.title),
            position=position if position is not None else "",
            lines=tuple(items),
        )
    except Exception:
        log.debug("scoreboard snapshot failed", exc_info=True)
        return None


class MineflayerClient:
    def __init__(self, options: gc.ConnectOptions, loop: asyncio.AbstractEventLoop) -> None:
        from javascript import On, off, require

        self._on = On
        self._off = off
        self._loop = loop
        self._options = options
        self._spawned = False

        payload: dict[str, Any] = {
            "host": options.host,
            "port": options.port,
            "version": options.version,
            "auth": options.auth,
            "username": options.username,
            "checkTimeoutInterval": int(options.check_timeout * 1000),
        }
        if options.profiles_folder:
            os.makedirs(options.profiles_folder, exist_ok=True)
            payload["profilesFolder"] = options.profiles_folder
        if options.on_device_code is not None:
            payload["onMsaCode"] = self._device_code_callback(options.on_device_code)

        self._bot = require("mineflayer").createBot(payload)
        self.on(gc.EVENT_SPAWN, self._mark_spawned)
        self.on(gc.EVENT_END, self._mark_ended)
        self.on(gc.EVENT_KICKED, self._mark_ended)

    def _device_code_callback(self, callback: Callable[[gc.DeviceCode], Any]) -> Callable[..., None]:
        def on_msa_code(*args: Any) -> None:
            payload = args[-1] if args else {}
            code = gc.DeviceCode.from_payload(payload)
            asyncio.run_coroutine_threadsafe(callback(code), self._loop)

        return on_msa_code

    def _mark_spawned(self, *_: Any) -> None:
        self._spawned = True

    def _mark_ended(self, *_: Any) -> None:
        self._spawned = False

    # ----- GameClient protocol ---------------------------------------------

    @property
    def username(self) -> Optional[str]:
        try:
            return _text_of(self._bot.username) or None
        except Exception:
            return None

    @property
    def uuid(self) -> Optional[str]:
        try:
            player = self._bot.player
            return _text_of(player.uuid) if player else None
        except Exception:
            return None

    @property
    def is_spawned(self) -> bool:
        return self._spawned

    @property
    def current_window(self) -> Any:
        return self._bot.currentWindow

    def close_window(self) -> None:
        window = self._bot.currentWindow
        if window:
            self._bot.closeWindow(window)

    def chat(self, text: str) -> None:
        self._bot.chat(text)

    async def tab_complete(self, prefix: str, *, timeout: float) -> list[str]:
        def call() -> list[str]:
            matches = self._bot.tabComplete(prefix, True, False, int(timeout * 1000))
            names = []
            for match in matches or []:
                names.append(_text_of(getattr(match, "match", match)))
            return names

        return await asyncio.wait_for(asyncio.to_thread(call), timeout=timeout + 1.0)

    def sidebar(self) -> Optional[Scoreboard]:
        try:
            boards = self._bot.scoreboard
            return snapshot_scoreboard(boards.sidebar if boards else None, "sidebar")
        except Exception:
            log.debug("sidebar read failed", exc_info=True)
            return None

    def on(self, event: str, handler: Callable[..., Any]) -> gc.Unsubscribe:
        js_event = _JS_EVENTS[event]
        loop = self._loop

        def bridge(this: Any, *args: Any) -> None:
            converted = [self._convert(event, arg) for arg in args]
            loop.call_soon_threadsafe(lambda: handler(*converted))

        self._on(self._bot, js_event)(bridge)

        def unsubscribe() -> None:
            try:
                self._off(self._bot, js_event, bridge)
            except Exception:
                log.debug("listener removal failed", exc_info=True, extra={"js_event": js_event})

        return unsubscribe

    def end(self, reason: str = "") -> None:
        self._bot.end(reason)

    @staticmethod
    def _convert(event: str, arg: Any) -> Any:
        if event in (
            gc.EVENT_SCOREBOARD_POSITION,
            gc.EVENT_SCOREBOARD_TITLE,
            gc.EVENT_SCORE_UPDATED,
            gc.EVENT_SCORE_REMOVED,
            gc.EVENT_SCOREBOARD_CREATED,
        ):
            if hasattr(arg, "items") and hasattr(arg, "name"):
                return snapshot_scoreboard(arg)
            return arg
        if event in (gc.EVENT_KICKED, gc.EVENT_END, gc.EVENT_ERROR, gc.EVENT_CHAT):
            return _text_of(arg)
        return arg


def create_mineflayer_client(options: gc.ConnectOptions) -> MineflayerClient:
    """ClientFactory for :class:`~modules.altrunner.runner.AltRunner`."""

    return MineflayerClient(options, asyncio.get_running_loop())
