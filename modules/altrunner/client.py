"""Boundary between the alt runner and the game-client library.

The runner never touches the network protocol; it talks to a
:class:`GameClient` built by a :data:`ClientFactory`. Handlers registered via
``on`` are always invoked on the asyncio loop.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from .scoreboard import Scoreboard

__all__ = [
    "AUTH_DEVICE_CODE",
    "AUTH_OFFLINE",
    "ClientFactory",
    "ConnectOptions",
    "DeviceCode",
    "GameClient",
    "Unsubscribe",
]

AUTH_OFFLINE = "offline"
AUTH_DEVICE_CODE = "microsoft"

# Lifecycle and scoreboard events a client must emit.
EVENT_SPAWN = "spawn"
EVENT_RESPAWN = "respawn"
EVENT_KICKED = "kicked"
EVENT_END = "end"
EVENT_ERROR = "error"
EVENT_CHAT = "chat"
EVENT_SCOREBOARD_POSITION = "scoreboard_position"
EVENT_SCOREBOARD_TITLE = "scoreboard_title"
EVENT_SCORE_UPDATED = "score_updated"
EVENT_SCORE_REMOVED = "score_removed"
EVENT_SCOREBOARD_CREATED = "scoreboard_created"

Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class DeviceCode:
    """Out-of-band login prompt reported by the auth layer."""

    user_code: str
    verification_uri: str = "https://microsoft.com/link"
    expires_in: int = 900

    @classmethod
    def from_payload(cls, payload: Any) -> "DeviceCode":
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if isinstance(payload, dict):
                    value = payload.get(key)
                else:
                    value = getattr(payload, key, None)
                if value:
                    return value
            return default

        try:
            expires = int(float(pick("expires_in", "expiresIn", default=900)))
        except (TypeError, ValueError):
            expires = 900
        return cls(
            user_code=str(pick("user_code", "userCode", default="—")),
            verification_uri=str(
                pick(
                    "verification_uri",
                    "verificationUri",
                    "verification_uri_complete",
                    "verificationUriComplete",
                    default="https://microsoft.com/link",
                )
            ),
            expires_in=max(1, expires),
        )


@dataclass(frozen=True)
class ConnectOptions:
    host: str
    port: int
    version: str
    username: str
    auth: str = AUTH_OFFLINE
    profiles_folder: Optional[str] = None
    check_timeout: float = 120.0
    on_device_code: Optional[Callable[[DeviceCode], Awaitable[None]]] = None


class GameClient(Protocol):
    """One live connection to the game server."""

    @property
    def username(self) -> Optional[str]: ...

    @property
    def uuid(self) -> Optional[str]: ...

    @property
    def is_spawned(self) -> bool: ...

    @property
    def current_window(self) -> Any: ...

    def close_window(self) -> None: ...

    def chat(self, text: str) -> None: ...

    async def tab_complete(self, prefix: str, *, timeout: float) -> list[str]:
        """Return the server's completion matches for ``prefix``."""
        ...

    def sidebar(self) -> Optional[Scoreboard]: ...

    def on(self, event: str, handler: Callable[..., Any]) -> Unsubscribe: ...

    def end(self, reason: str = "") -> None: ...


ClientFactory = Callable[[ConnectOptions], GameClient]
