from __future__ import annotations

import asyncio
import logging
import random

import discord
from discord.ext import commands

from config.runtime import get_log_level
from modules.altrunner import AltRunner
from modules.altrunner.mineflayer import create_mineflayer_client
from modules.common.runtime import Runtime
from modules.presence import PresenceTracker
from modules.storage import SqliteStore
from shared import health as healthmod
from shared.config import (
    get_command_prefix,
    get_config_snapshot,
    get_database_path,
    get_discord_token,
    get_env_name,
    get_log_channel_id,
    load_alt_runner_settings,
)
from shared.logging import setup_logging
from shared.redaction import sanitize_text

ALT_SETTINGS = load_alt_runner_settings()


def _debug_loggers(settings) -> tuple[str, ...]:
    names: tuple[str, ...] = ()
    if settings.debug:
        names += ("altsup.runner", "altsup.login", "altsup.reconnect")
    if settings.debug_verbose:
        names += ("altsup.world", "altsup.commands", "altsup.mineflayer")
    return names


setup_logging(level=get_log_level(), debug_loggers=_debug_loggers(ALT_SETTINGS))
log = logging.getLogger("altsup.app")

INTENTS = discord.Intents.default()
INTENTS.message_content = True
INTENTS.guilds = True

bot = commands.Bot(
    command_prefix=commands.when_mentioned_or(get_command_prefix()),
    intents=INTENTS,
)

runtime = Runtime(bot)
store = SqliteStore(get_database_path())
alt_runner = AltRunner(
    store, create_mineflayer_client, settings=ALT_SETTINGS, scheduler=runtime.scheduler
)
presence = PresenceTracker(store, alt_runner, scheduler=runtime.scheduler)
runtime.set_status_source(alt_runner.status_counts)

bot.alt_runner = alt_runner
bot.alt_store = store


async def _setup_hook() -> None:
    await bot.load_extension("cogs.alt_admin")


bot.setup_hook = _setup_hook


async def _start_guild_alts() -> None:
    for guild in list(bot.guilds):
        try:
            outcomes = await alt_runner.start_all_for_guild(guild.id)
            log.info(
                "guild alts started",
                extra={"guild_id": guild.id, "alts": len(outcomes)},
            )
        except Exception:
            log.exception("guild alt startup failed", extra={"guild_id": guild.id})
        await asyncio.sleep(random.uniform(0.0, alt_runner.settings.login_jitter))


@bot.event
async def on_ready():
    healthmod.set_component("discord", True)
    log.info(
        "Bot ready",
        extra={"user": str(bot.user), "env": get_env_name(), "guilds": len(bot.guilds)},
    )
    if getattr(bot, "_altsup_started", False):
        return
    bot._altsup_started = True

    alt_runner.init(bot)
    presence.bind(bot)
    healthmod.set_component("altrunner", True)
    runtime.scheduler.spawn(_start_guild_alts(), name="start_guild_alts")
    presence.start()
    await runtime.send_log_message(
        get_log_channel_id(), f"🟢 Alt supervisor online • env={get_env_name()}"
    )


@bot.event
async def on_disconnect():
    healthmod.set_component("discord", False)


@bot.event
async def on_command_error(ctx: commands.Context, error: Exception):
    log.warning(
        "cmd error",
        extra={
            "command": getattr(ctx.command, "qualified_name", None),
            "user": getattr(ctx.author, "id", None),
            "error": repr(error),
        },
    )
    await runtime.send_log_message(
        get_log_channel_id(),
        sanitize_text(f"⚠️ command error • cmd={getattr(ctx.command, 'qualified_name', '-')} • {error!r}"),
    )


async def main() -> None:
    token = get_discord_token()
    log.info("configuration", extra={"config": get_config_snapshot()})
    try:
        await runtime.start(token)
    finally:
        presence.stop()
        await alt_runner.shutdown()
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
