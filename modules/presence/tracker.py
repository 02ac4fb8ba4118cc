"""Player presence trackers driven by a checker alt's name completion."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import discord

from modules.common.runtime import Scheduler, TimerHandle
from modules.storage.base import AltStore, TrackerConfig
from shared.config import PresenceSettings, load_presence_settings
from shared.dedupe import EventDeduper

from .render import build_presence_embed, entered_alert, left_alert

log = logging.getLogger("altsup.presence")

__all__ = [
    "PresenceDiff",
    "PresenceTracker",
    "TRACKER_KINDS",
    "TrackerKind",
    "diff_names",
    "filter_names",
    "watched_names",
]

_PLAYER_NAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,16}$")


@dataclass(frozen=True)
class TrackerKind:
    key: str
    title_prefix: str
    footer_text: str
    alt_field: str
    alerts_channel: str
    area_label: str


TRACKER_KINDS: Dict[str, TrackerKind] = {
    "shard": TrackerKind(
        key="shard",
        title_prefix="Shard Player Tracker",
        footer_text="Factions Bot Shard Player Tracker",
        alt_field="shard_checker_alt_id",
        alerts_channel="shard-player-alerts",
        area_label="shard",
    ),
    "rpost": TrackerKind(
        key="rpost",
        title_prefix="Outpost Player Tracker",
        footer_text="Factions Bot Raiding Outpost Player Tracker",
        alt_field="rpost_checker_alt_id",
        alerts_channel="rpost-player-alerts",
        area_label="Raiding Outpost shard",
    ),
}


@dataclass(frozen=True)
class PresenceDiff:
    joined: Tuple[str, ...]
    left: Tuple[str, ...]


def filter_names(raw: Iterable[Any], cap: int) -> List[str]:
    """Keep valid player names, first occurrence only, at most ``cap``."""

    seen: set[str] = set()
    names: List[str] = []
    for item in raw:
        name = str(item or "").strip()
        if not _PLAYER_NAME_RE.match(name) or name in seen:
            continue
        seen.add(name)
        names.append(name)
        if len(names) >= cap:
            break
    return names


def diff_names(previous: Sequence[str], current: Sequence[str]) -> PresenceDiff:
    prev_keys = {name.lower() for name in previous}
    curr_keys = {name.lower() for name in current}
    return PresenceDiff(
        joined=tuple(name for name in current if name.lower() not in prev_keys),
        left=tuple(name for name in previous if name.lower() not in curr_keys),
    )


def watched_names(names: Iterable[str], watchlist: Iterable[str]) -> List[str]:
    keys = {name.lower() for name in watchlist}
    return [name for name in names if name.lower() in keys]


class PresenceTracker:
    """Runs one presence check per (guild, kind) and keeps the board fresh."""

    def __init__(
        self,
        store: AltStore,
        runner: Any,
        *,
        settings: PresenceSettings | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.settings = settings or load_presence_settings()
        self.scheduler = scheduler or runner.scheduler
        self._clock = self.scheduler.clock
        self._debounce = EventDeduper(self.settings.debounce, clock=self._clock)
        self._previous_names: Dict[Tuple[int, str], List[str]] = {}
        self._previous_message: Dict[Tuple[int, str], int] = {}
        self.bot: Any = None
        self._loop_handle: Optional[TimerHandle] = None

    def bind(self, bot: Any) -> None:
        self.bot = bot

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def start(self) -> TimerHandle:
        if self._loop_handle is None or not self._loop_handle.active():
            self._loop_handle = self.scheduler.every(
                seconds=self.settings.tick_interval, tag="presence", name="presence_tick"
            ).do(self.tick)
        return self._loop_handle

    def stop(self) -> None:
        if self._loop_handle is not None:
            self._loop_handle.cancel()
            self._loop_handle = None

    async def tick(self) -> None:
        for config in await self.store.list_tracker_configs():
            if not config.enabled or config.kind not in TRACKER_KINDS:
                continue
            try:
                await self.run_once_for_guild(config.guild_id, config.kind)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception(
                    "presence run failed",
                    extra={"guild_id": config.guild_id, "kind": config.kind},
                )

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    async def run_once_for_guild(self, guild_id: int, kind: str) -> Optional[List[str]]:
        """Query, alert and render once; returns the names or ``None`` if skipped."""

        profile = TRACKER_KINDS[kind]
        key = (guild_id, kind)
        if not self._debounce.should_emit(key):
            return None

        config = await self.store.get_tracker_config(guild_id, kind)
        if not config.enabled or not config.channel_id:
            return None

        started_at = int(self._clock.wall())
        interval = config.interval_minutes if config.interval_minutes > 0 else self.settings.default_interval_minutes
        if started_at < config.last_run_at + interval * 60:
            return None
        await self.store.upsert_tracker_config(guild_id, kind, last_run_at=started_at)

        guild_config = await self.store.get_guild_config(guild_id)
        alt_id = getattr(guild_config, profile.alt_field, None)
        if not alt_id:
            log.debug("no checker alt assigned", extra={"guild_id": guild_id, "kind": kind})
            return None
        client = self.runner.get_client(alt_id)
        if client is None or not self.runner.is_online(alt_id):
            log.warning(
                "checker alt not usable; skipping run",
                extra={"guild_id": guild_id, "kind": kind, "alt_id": alt_id},
            )
            return None

        guild = await self._fetch_guild(guild_id)
        if guild is None:
            return None
        channel = await self._fetch_channel(guild, config.channel_id)
        if channel is None:
            return None

        try:
            raw = await client.tab_complete(
                self.settings.query_prefix, timeout=self.settings.query_timeout
            )
        except Exception as exc:
            log.warning(
                "presence query failed",
                extra={"guild_id": guild_id, "kind": kind, "alt_id": alt_id, "error": repr(exc)},
            )
            return None
        names = filter_names(raw, self.settings.max_names)

        previous = self._previous_names.get(key, [])
        diff = diff_names(previous, names)
        self._previous_names[key] = names

        watchlist = await self.store.watchlist_get(guild_id)
        joined = watched_names(diff.joined, watchlist)
        left = watched_names(diff.left, watchlist)
        if joined or left:
            await self._post_alerts(guild, profile, joined, left)

        embed = build_presence_embed(
            title_prefix=profile.title_prefix,
            footer_text=profile.footer_text,
            names=names,
            world=self.runner.get_alt_world(alt_id),
        )
        await self._publish(channel, key, config, embed)
        log.info(
            "presence updated",
            extra={
                "guild_id": guild_id,
                "kind": kind,
                "players": len(names),
                "joined": len(diff.joined),
                "left": len(diff.left),
            },
        )
        return names

    # ------------------------------------------------------------------
    # Discord helpers
    # ------------------------------------------------------------------

    async def _fetch_guild(self, guild_id: int) -> Any:
        if self.bot is None:
            return None
        guild = self.bot.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self.bot.fetch_guild(guild_id)
        except discord.HTTPException as exc:
            log.warning("guild unavailable", extra={"guild_id": guild_id, "error": repr(exc)})
            return None

    async def _fetch_channel(self, guild: Any, channel_id: int) -> Any:
        channel = guild.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await guild.fetch_channel(channel_id)
        except discord.HTTPException as exc:
            log.warning(
                "tracker channel unavailable",
                extra={"guild_id": guild.id, "channel_id": channel_id, "error": repr(exc)},
            )
            return None

    async def _ensure_alerts_channel(self, guild: Any, profile: TrackerKind) -> Any:
        channel = discord.utils.get(guild.text_channels, name=profile.alerts_channel)
        if channel is not None:
            return channel
        try:
            return await guild.create_text_channel(
                profile.alerts_channel, reason=f"Auto-create {profile.key} player alerts channel"
            )
        except discord.HTTPException as exc:
            log.warning(
                "alerts channel create failed",
                extra={"guild_id": guild.id, "channel": profile.alerts_channel, "error": repr(exc)},
            )
            return None

    async def _post_alerts(
        self, guild: Any, profile: TrackerKind, joined: Sequence[str], left: Sequence[str]
    ) -> int:
        channel = await self._ensure_alerts_channel(guild, profile)
        if channel is None:
            return 0
        lines = [entered_alert(name, profile.area_label) for name in joined]
        lines += [left_alert(name, profile.area_label) for name in left]
        sent = 0
        for line in lines:
            try:
                await channel.send(line)
                sent += 1
            except discord.HTTPException as exc:
                log.warning("presence alert failed", extra={"guild_id": guild.id, "error": repr(exc)})
        return sent

    async def _publish(
        self,
        channel: Any,
        key: Tuple[int, str],
        config: TrackerConfig,
        embed: discord.Embed,
    ) -> Any:
        previous_id = config.previous_message_id or self._previous_message.get(key)
        message = None
        if previous_id:
            try:
                previous = await channel.fetch_message(previous_id)
            except discord.HTTPException:
                previous = None
            if previous is not None:
                try:
                    message = await previous.edit(embed=embed)
                except discord.HTTPException:
                    message = None
                    try:
                        await previous.delete()
                    except discord.HTTPException:
                        pass

        if message is None:
            message = await channel.send(embed=embed)

        message_id = getattr(message, "id", None)
        if message_id:
            self._previous_message[key] = message_id
            if message_id != config.previous_message_id:
                await self.store.upsert_tracker_config(
                    key[0], key[1], previous_message_id=message_id
                )
        return message
