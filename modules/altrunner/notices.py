"""Operator notices posted to a guild's alt channel."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

import discord

from modules.common.embeds import get_embed_colour

log = logging.getLogger("altsup.notices")

__all__ = [
    "AltNotifier",
    "build_device_code_notice",
    "build_login_rejected_notice",
    "build_rate_limit_notice",
    "build_world_notice",
]

DEFAULT_SIGN_IN_URL = "https://microsoft.com/link"


def build_device_code_notice(
    *,
    label: str,
    user_code: str,
    verification_uri: str,
    expires_in: int,
    account_hint: str = "",
) -> tuple[discord.Embed, discord.ui.View]:
    minutes = max(1, round(int(expires_in or 900) / 60))
    lines = [
        "This alt must authenticate with Microsoft.",
        "",
        "**Step 1:** Click **Open Sign-in**",
        f"**Step 2:** Enter code: **`{user_code}`**",
    ]
    if account_hint:
        lines.append(f"**Step 3:** Sign in with: `{account_hint}`")
    lines.extend(["", f"_Code expires in ~{minutes} minute{'' if minutes == 1 else 's'}._"])

    embed = discord.Embed(
        title=f"🔐 Microsoft Login — {label}",
        description="\n".join(lines),
        colour=get_embed_colour("auth"),
    )
    embed.set_footer(text="After completing the sign-in, the alt will connect automatically.")

    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Open Sign-in",
            style=discord.ButtonStyle.link,
            url=verification_uri or DEFAULT_SIGN_IN_URL,
        )
    )
    return embed, view


def build_rate_limit_notice(label: str) -> discord.Embed:
    return discord.Embed(
        title="⏳ Network is rate-limiting new connections",
        description=f"**{label}** hit a network limit; will retry shortly.",
        colour=get_embed_colour("warning"),
    )


def build_login_rejected_notice(label: str) -> discord.Embed:
    return discord.Embed(
        title="❌ Microsoft signed in, but Minecraft login was rejected (403)",
        description="\n".join(
            [
                f"Alt: **{label}**",
                "",
                "This usually means the account cannot obtain a **Minecraft Java** token.",
                "Ensure the Microsoft account owns **Minecraft: Java Edition** and has an Xbox profile.",
            ]
        ),
        colour=get_embed_colour("error"),
    )


def build_world_notice(label: str, world: str) -> discord.Embed:
    return discord.Embed(
        title="🧭 Alt shard detected",
        description=f"**{label}** is on **{world}**",
        colour=get_embed_colour("success"),
    )


ChannelLookup = Callable[[int], Awaitable[Optional[int]]]


class AltNotifier:
    """Best-effort delivery to the alt channel configured for a guild.

    Every failure is logged and turned into ``None``/``False``.
    """

    def __init__(self, channel_for_guild: ChannelLookup) -> None:
        self._channel_for_guild = channel_for_guild
        self.bot: Any = None

    def bind(self, bot: Any) -> None:
        self.bot = bot

    async def _resolve_channel(self, guild_id: Optional[int]) -> Any:
        if self.bot is None or guild_id is None:
            return None
        try:
            channel_id = await self._channel_for_guild(guild_id)
        except Exception as exc:
            log.warning("alt channel lookup failed", extra={"guild_id": guild_id, "error": repr(exc)})
            return None
        if not channel_id:
            return None
        channel = self.bot.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.bot.fetch_channel(channel_id)
        except (discord.HTTPException, discord.NotFound, discord.Forbidden) as exc:
            log.warning(
                "alt channel unavailable",
                extra={"guild_id": guild_id, "channel_id": channel_id, "error": repr(exc)},
            )
            return None

    async def post(self, guild_id: Optional[int], **payload: Any) -> Any:
        channel = await self._resolve_channel(guild_id)
        if channel is None:
            return None
        try:
            return await channel.send(**payload)
        except Exception as exc:
            log.warning("alt notice failed", extra={"guild_id": guild_id, "error": repr(exc)})
            return None

    async def delete(self, guild_id: Optional[int], message_id: Optional[int]) -> bool:
        if not message_id:
            return False
        channel = await self._resolve_channel(guild_id)
        if channel is None:
            return False
        try:
            message = await channel.fetch_message(message_id)
            await message.delete()
            return True
        except Exception as exc:
            log.debug(
                "alt notice delete failed",
                extra={"guild_id": guild_id, "message_id": message_id, "error": repr(exc)},
            )
            return False
