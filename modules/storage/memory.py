"""Dict-backed store for tests and throwaway dev runs."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    ALT_UPDATABLE_FIELDS,
    AUTH_MODES,
    GUILD_FIELDS,
    TRACKER_FIELDS,
    AltRecord,
    GuildConfig,
    TrackerConfig,
    _check_fields,
    normalize_watch_name,
)

__all__ = ["MemoryStore"]


class MemoryStore:
    def __init__(self) -> None:
        self.alts: Dict[int, AltRecord] = {}
        self.guilds: Dict[int, GuildConfig] = {}
        self.trackers: Dict[Tuple[int, str], TrackerConfig] = {}
        self.watchlists: Dict[int, Dict[str, str]] = {}
        self._next_id = 1

    async def get_alt(self, alt_id: int) -> Optional[AltRecord]:
        return self.alts.get(alt_id)

    async def list_alts(self, guild_id: Optional[int] = None) -> List[AltRecord]:
        rows = sorted(self.alts.values(), key=lambda alt: alt.id)
        if guild_id is None:
            return rows
        return [alt for alt in rows if alt.guild_id == guild_id]

    async def insert_alt(
        self,
        guild_id: int,
        label: str,
        *,
        auth_mode: str = "microsoft",
        mc_username: Optional[str] = None,
        email_hint: Optional[str] = None,
    ) -> AltRecord:
        if auth_mode not in AUTH_MODES:
            raise ValueError(f"Invalid auth mode: {auth_mode}")
        record = AltRecord(
            id=self._next_id,
            guild_id=guild_id,
            label=label,
            auth_mode=auth_mode,
            mc_username=mc_username,
            email_hint=email_hint,
        )
        self.alts[record.id] = record
        self._next_id += 1
        return record

    async def update_alt(self, alt_id: int, **fields: Any) -> Optional[AltRecord]:
        _check_fields(fields, ALT_UPDATABLE_FIELDS)
        record = self.alts.get(alt_id)
        if record is None:
            return None
        record = replace(record, **fields)
        self.alts[alt_id] = record
        return record

    async def delete_alt(self, alt_id: int) -> bool:
        return self.alts.pop(alt_id, None) is not None

    async def set_alt_status(self, alt_id: int, status: str, last_seen: int) -> None:
        await self.update_alt(alt_id, status=status, last_seen=last_seen)

    async def set_alt_identity(
        self, alt_id: int, mc_uuid: Optional[str], mc_last_username: Optional[str]
    ) -> None:
        await self.update_alt(alt_id, mc_uuid=mc_uuid, mc_last_username=mc_last_username)

    async def set_alt_world(self, alt_id: int, world: str, updated_at: int) -> None:
        await self.update_alt(alt_id, last_world=world, world_updated_at=updated_at)

    async def get_guild_config(self, guild_id: int) -> GuildConfig:
        return self.guilds.get(guild_id) or GuildConfig(guild_id=guild_id)

    async def upsert_guild_config(self, guild_id: int, **fields: Any) -> GuildConfig:
        _check_fields(fields, GUILD_FIELDS)
        config = replace(await self.get_guild_config(guild_id), **fields)
        self.guilds[guild_id] = config
        return config

    async def get_tracker_config(self, guild_id: int, kind: str) -> TrackerConfig:
        return self.trackers.get((guild_id, kind)) or TrackerConfig(guild_id=guild_id, kind=kind)

    async def upsert_tracker_config(self, guild_id: int, kind: str, **fields: Any) -> TrackerConfig:
        _check_fields(fields, TRACKER_FIELDS)
        config = replace(await self.get_tracker_config(guild_id, kind), **fields)
        self.trackers[(guild_id, kind)] = config
        return config

    async def list_tracker_configs(self) -> List[TrackerConfig]:
        return [self.trackers[key] for key in sorted(self.trackers)]

    async def watchlist_get(self, guild_id: int) -> List[str]:
        names = self.watchlists.get(guild_id, {})
        return sorted(names.values(), key=str.lower)

    async def watchlist_add(self, guild_id: int, name: str) -> bool:
        clean = normalize_watch_name(name)
        if clean is None:
            raise ValueError(f"Invalid player name: {name!r}")
        names = self.watchlists.setdefault(guild_id, {})
        if clean.lower() in names:
            return False
        names[clean.lower()] = clean
        return True

    async def watchlist_remove(self, guild_id: int, name: str) -> bool:
        names = self.watchlists.get(guild_id, {})
        return names.pop(str(name or "").strip().lower(), None) is not None
