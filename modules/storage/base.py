"""Records and the async store protocol used by the runner and tracker."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

__all__ = [
    "ALT_UPDATABLE_FIELDS",
    "AUTH_MODES",
    "AltRecord",
    "AltStore",
    "GuildConfig",
    "TrackerConfig",
    "normalize_watch_name",
]

AUTH_MODES = ("microsoft", "offline")

ALT_UPDATABLE_FIELDS = frozenset(
    {
        "label",
        "auth_mode",
        "mc_username",
        "email_hint",
        "mc_uuid",
        "mc_last_username",
        "last_world",
        "world_updated_at",
        "status",
        "last_seen",
    }
)

GUILD_FIELDS = frozenset({"alt_channel_id", "shard_checker_alt_id", "rpost_checker_alt_id"})
TRACKER_FIELDS = frozenset(
    {"enabled", "channel_id", "interval_minutes", "last_run_at", "previous_message_id"}
)

_WATCH_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,16}$")


@dataclass(frozen=True)
class AltRecord:
    id: int
    guild_id: int
    label: str
    auth_mode: str = "microsoft"
    mc_username: Optional[str] = None
    email_hint: Optional[str] = None
    mc_uuid: Optional[str] = None
    mc_last_username: Optional[str] = None
    last_world: Optional[str] = None
    world_updated_at: int = 0
    status: str = "offline"
    last_seen: int = 0

    @property
    def display_name(self) -> str:
        return self.label or f"Alt {self.id}"


@dataclass(frozen=True)
class GuildConfig:
    guild_id: int
    alt_channel_id: Optional[int] = None
    shard_checker_alt_id: Optional[int] = None
    rpost_checker_alt_id: Optional[int] = None


@dataclass(frozen=True)
class TrackerConfig:
    guild_id: int
    kind: str
    enabled: bool = False
    channel_id: Optional[int] = None
    interval_minutes: int = 5
    last_run_at: int = 0
    previous_message_id: Optional[int] = None


def normalize_watch_name(name: object) -> Optional[str]:
    """Return a trimmed player name or ``None`` when it cannot be one."""

    text = str(name or "").strip()
    if not _WATCH_NAME_RE.match(text):
        return None
    return text


def _check_fields(fields: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")


class AltStore(Protocol):
    async def get_alt(self, alt_id: int) -> Optional[AltRecord]: ...

    async def list_alts(self, guild_id: Optional[int] = None) -> List[AltRecord]: ...

    async def insert_alt(
        self,
        guild_id: int,
        label: str,
        *,
        auth_mode: str = "microsoft",
        mc_username: Optional[str] = None,
        email_hint: Optional[str] = None,
    ) -> AltRecord: ...

    async def update_alt(self, alt_id: int, **fields: Any) -> Optional[AltRecord]: ...

    async def delete_alt(self, alt_id: int) -> bool: ...

    async def set_alt_status(self, alt_id: int, status: str, last_seen: int) -> None: ...

    async def set_alt_identity(
        self, alt_id: int, mc_uuid: Optional[str], mc_last_username: Optional[str]
    ) -> None: ...

    async def set_alt_world(self, alt_id: int, world: str, updated_at: int) -> None: ...

    async def get_guild_config(self, guild_id: int) -> GuildConfig: ...

    async def upsert_guild_config(self, guild_id: int, **fields: Any) -> GuildConfig: ...

    async def get_tracker_config(self, guild_id: int, kind: str) -> TrackerConfig: ...

    async def upsert_tracker_config(self, guild_id: int, kind: str, **fields: Any) -> TrackerConfig: ...

    async def list_tracker_configs(self) -> List[TrackerConfig]: ...

    async def watchlist_get(self, guild_id: int) -> List[str]: ...

    async def watchlist_add(self, guild_id: int, name: str) -> bool: ...

    async def watchlist_remove(self, guild_id: int, name: str) -> bool: ...
