"""Admin commands for alts, the watch-list and the presence trackers."""

from __future__ import annotations

import logging
from typing import Optional

import discord
from discord.ext import commands

from modules.altrunner import AltRunner, AltRunnerError
from modules.common.embeds import get_embed_colour
from modules.common.logs import alt_label, channel_label, log as audit, user_label
from modules.presence import TRACKER_KINDS
from modules.storage import AltRecord, AltStore
from shared.rbac import admin_only

log = logging.getLogger("altsup.cogs.alt_admin")

_NO_WORLD = "—"


class AltAdmin(commands.Cog):
    """Operator surface over the alt runner and presence trackers."""

    def __init__(self, bot: commands.Bot, runner: AltRunner, store: AltStore) -> None:
        self.bot = bot
        self.runner = runner
        self.store = store

    async def cog_check(self, ctx: commands.Context) -> bool:
        return await admin_only().predicate(ctx)

    async def cog_command_error(self, ctx: commands.Context, error: Exception) -> None:
        original = getattr(error, "original", error)
        if isinstance(original, (AltRunnerError, ValueError)):
            await ctx.reply(str(original), mention_author=False)
            return
        if isinstance(error, (commands.CheckFailure, commands.UserInputError)):
            await ctx.reply(str(error) or "Invalid command.", mention_author=False)

    async def _guild_alt(self, ctx: commands.Context, alt_id: int) -> Optional[AltRecord]:
        record = await self.store.get_alt(alt_id)
        if record is None or record.guild_id != ctx.guild.id:
            await ctx.reply(f"Alt {alt_id} not found.", mention_author=False)
            return None
        return record

    def _audit(self, ctx: commands.Context, action: str, **fields) -> None:
        audit.human(
            "info",
            f"alt admin: {action}",
            user=user_label(ctx.guild, ctx.author.id),
            **fields,
        )

    # === Alts ===

    @commands.group(name="alt", invoke_without_command=True, help="Manage supervised alts.")
    async def alt(self, ctx: commands.Context) -> None:
        await self.alt_list(ctx)

    @alt.command(name="list", help="List alts with status and current world.")
    async def alt_list(self, ctx: commands.Context) -> None:
        alts = await self.store.list_alts(ctx.guild.id)
        embed = discord.Embed(title="Alts", colour=get_embed_colour("tracker"))
        if not alts:
            embed.description = "_No alts configured._"
        for record in alts[:25]:
            world = self.runner.get_alt_world(record.id) or _NO_WORLD
            updated = self.runner.get_alt_world_updated_at(record.id)
            seen = f" • <t:{updated}:R>" if updated else ""
            embed.add_field(
                name=f"#{record.id} {record.display_name}",
                value=f"{self.runner.get_alt_status(record.id)} • {record.auth_mode} • {world}{seen}",
                inline=False,
            )
        await ctx.reply(embed=embed, mention_author=False)

    @alt.command(name="add", help="Add an alt: !alt add <label> [microsoft|offline] [username/email hint].")
    async def alt_add(
        self,
        ctx: commands.Context,
        label: str,
        auth_mode: str = "microsoft",
        username: Optional[str] = None,
    ) -> None:
        mode = auth_mode.strip().lower()
        record = await self.store.insert_alt(
            ctx.guild.id,
            label,
            auth_mode=mode,
            mc_username=username if mode == "offline" else None,
            email_hint=username if mode == "microsoft" else None,
        )
        self._audit(ctx, "add", alt=alt_label(record.id, record.label), auth=mode)
        await ctx.reply(f"Added {alt_label(record.id, record.label)}.", mention_author=False)

    @alt.command(name="remove", help="Stop and delete an alt.")
    async def alt_remove(self, ctx: commands.Context, alt_id: int) -> None:
        record = await self._guild_alt(ctx, alt_id)
        if record is None:
            return
        await self.runner.forget_alt(alt_id)
        await self.store.delete_alt(alt_id)
        self._audit(ctx, "remove", alt=alt_label(alt_id, record.label))
        await ctx.reply(f"Removed {alt_label(alt_id, record.label)}.", mention_author=False)

    @alt.command(name="start", help="Queue an alt for login.")
    async def alt_start(self, ctx: commands.Context, alt_id: int) -> None:
        record = await self._guild_alt(ctx, alt_id)
        if record is None:
            return
        await ctx.message.add_reaction("⏳")
        outcome = await self.runner.start_alt(ctx.guild.id, alt_id)
        self._audit(ctx, "start", alt=alt_label(alt_id, record.label), outcome=outcome.status)
        if outcome.ok:
            await ctx.reply(f"{alt_label(alt_id, record.label)}: {outcome.status}.", mention_author=False)
        else:
            reason = str(outcome.error) if outcome.error else outcome.status
            await ctx.reply(
                f"{alt_label(alt_id, record.label)} failed to start: {reason}", mention_author=False
            )

    @alt.command(name="stop", help="Disconnect an alt and cancel reconnects.")
    async def alt_stop(self, ctx: commands.Context, alt_id: int) -> None:
        record = await self._guild_alt(ctx, alt_id)
        if record is None:
            return
        await self.runner.stop_alt(alt_id)
        self._audit(ctx, "stop", alt=alt_label(alt_id, record.label))
        await ctx.reply(f"Stopped {alt_label(alt_id, record.label)}.", mention_author=False)

    @alt.command(name="run", help="Queue a chat command for an alt.")
    async def alt_run(self, ctx: commands.Context, alt_id: int, *, command: str) -> None:
        record = await self._guild_alt(ctx, alt_id)
        if record is None:
            return
        line = await self.runner.run_command(alt_id, command)
        self._audit(ctx, "run", alt=alt_label(alt_id, record.label), command=line)
        await ctx.reply(f"Queued `{line}` for {alt_label(alt_id, record.label)}.", mention_author=False)

    @alt.command(name="status", help="Show one alt's live status.")
    async def alt_status(self, ctx: commands.Context, alt_id: int) -> None:
        record = await self._guild_alt(ctx, alt_id)
        if record is None:
            return
        status = self.runner.get_alt_status(alt_id)
        world = self.runner.get_alt_world(alt_id) or _NO_WORLD
        await ctx.reply(
            f"{alt_label(alt_id, record.label)} • {status} • world: {world}", mention_author=False
        )

    @alt.command(name="channel", help="Set the channel for alt notices (device codes, limits).")
    async def alt_channel(self, ctx: commands.Context, channel: discord.TextChannel) -> None:
        await self.store.upsert_guild_config(ctx.guild.id, alt_channel_id=channel.id)
        self._audit(ctx, "channel", channel=channel_label(ctx.guild, channel.id))
        await ctx.reply(f"Alt notices will post in {channel.mention}.", mention_author=False)

    # === Watch-list ===

    @commands.group(name="watch", invoke_without_command=True, help="Manage the player watch-list.")
    async def watch(self, ctx: commands.Context) -> None:
        await self.watch_list(ctx)

    @watch.command(name="list", help="Show watched player names.")
    async def watch_list(self, ctx: commands.Context) -> None:
        names = await self.store.watchlist_get(ctx.guild.id)
        body = ", ".join(f"`{name}`" for name in names) if names else "_Watch-list is empty._"
        await ctx.reply(body, mention_author=False)

    @watch.command(name="add", help="Watch a player name.")
    async def watch_add(self, ctx: commands.Context, name: str) -> None:
        added = await self.store.watchlist_add(ctx.guild.id, name)
        message = f"Watching `{name}`." if added else f"`{name}` is already watched."
        await ctx.reply(message, mention_author=False)

    @watch.command(name="remove", help="Stop watching a player name.")
    async def watch_remove(self, ctx: commands.Context, name: str) -> None:
        removed = await self.store.watchlist_remove(ctx.guild.id, name)
        message = f"Stopped watching `{name}`." if removed else f"`{name}` was not watched."
        await ctx.reply(message, mention_author=False)

    # === Trackers ===

    @commands.group(name="tracker", invoke_without_command=True, help="Configure presence trackers.")
    async def tracker(self, ctx: commands.Context) -> None:
        lines = []
        for kind in TRACKER_KINDS:
            config = await self.store.get_tracker_config(ctx.guild.id, kind)
            state = "on" if config.enabled else "off"
            where = f"<#{config.channel_id}>" if config.channel_id else "no channel"
            lines.append(f"**{kind}**: {state} • {where} • every {config.interval_minutes} min")
        await ctx.reply("\n".join(lines), mention_author=False)

    @tracker.command(name="set", help="!tracker set <shard|rpost> <#channel> <minutes> <checker alt id>")
    async def tracker_set(
        self,
        ctx: commands.Context,
        kind: str,
        channel: discord.TextChannel,
        minutes: int,
        alt_id: int,
    ) -> None:
        kind = kind.lower()
        if kind not in TRACKER_KINDS:
            raise commands.BadArgument(f"Unknown tracker kind: {kind}")
        if minutes < 1:
            raise commands.BadArgument("Interval must be at least 1 minute.")
        if await self._guild_alt(ctx, alt_id) is None:
            return
        await self.store.upsert_tracker_config(
            ctx.guild.id, kind, enabled=True, channel_id=channel.id, interval_minutes=minutes
        )
        await self.store.upsert_guild_config(
            ctx.guild.id, **{TRACKER_KINDS[kind].alt_field: alt_id}
        )
        self._audit(ctx, "tracker set", kind=kind, channel=channel_label(ctx.guild, channel.id))
        await ctx.reply(
            f"{kind} tracker posts in {channel.mention} every {minutes} min using alt #{alt_id}.",
            mention_author=False,
        )

    @tracker.command(name="off", help="Disable a presence tracker.")
    async def tracker_off(self, ctx: commands.Context, kind: str) -> None:
        kind = kind.lower()
        if kind not in TRACKER_KINDS:
            raise commands.BadArgument(f"Unknown tracker kind: {kind}")
        await self.store.upsert_tracker_config(ctx.guild.id, kind, enabled=False)
        self._audit(ctx, "tracker off", kind=kind)
        await ctx.reply(f"{kind} tracker disabled.", mention_author=False)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(AltAdmin(bot, bot.alt_runner, bot.alt_store))
