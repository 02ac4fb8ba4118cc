"""Embed and alert text for the player presence trackers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Sequence

import discord

from modules.common.embeds import get_embed_colour

__all__ = [
    "FIELD_LIMIT",
    "MAX_FIELDS",
    "build_presence_embed",
    "bullets_for",
    "entered_alert",
    "left_alert",
]

FIELD_LIMIT = 1024
MAX_FIELDS = 25
UNKNOWN_WORLD = "Unknown"


def bullets_for(names: Sequence[str], max_len: int = FIELD_LIMIT) -> List[str]:
    """Pack ``• name`` lines into chunks no longer than ``max_len``."""

    if not names:
        return ["_None_"]
    chunks: List[str] = []
    buf = ""
    for name in names:
        line = f"• {name}"
        if (len(buf) + 1 if buf else 0) + len(line) > max_len:
            chunks.append(buf)
            buf = line
        else:
            buf = f"{buf}\n{line}" if buf else line
    if buf:
        chunks.append(buf)
    return chunks


def entered_alert(name: str, area: str) -> str:
    return f"🔴 **{name}** has **entered** the {area}, keep an eye out."


def left_alert(name: str, area: str) -> str:
    return f"🟢 **{name}** has **left** the {area}, what a good boy."


def build_presence_embed(
    *,
    title_prefix: str,
    footer_text: str,
    names: Sequence[str],
    world: str | None,
    now: datetime | None = None,
) -> discord.Embed:
    now = now or datetime.now(timezone.utc)
    total = len(names)
    embed = discord.Embed(
        title=f"{title_prefix} - {total} Player{'' if total == 1 else 's'} in {world or UNKNOWN_WORLD}",
        colour=get_embed_colour("tracker"),
        timestamp=now,
    )
    embed.set_footer(text=f"{footer_text} • Last update: <t:{int(now.timestamp())}:t>")
    for index, chunk in enumerate(bullets_for(names)[:MAX_FIELDS]):
        embed.add_field(
            name=f"Players ({total})" if index == 0 else "Players (cont.)",
            value=chunk,
            inline=False,
        )
    return embed
