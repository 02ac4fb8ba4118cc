from __future__ import annotations

"""Shared helpers for Discord embeds."""

from typing import Literal

import discord


EmbedCategory = Literal["auth", "success", "warning", "error", "tracker"]

_COLOURS: dict[EmbedCategory, discord.Colour] = {
    "auth": discord.Colour(0x5865F2),
    "success": discord.Colour(0x57F287),
    "warning": discord.Colour(0xF1C40F),
    "error": discord.Colour(0xED4245),
    "tracker": discord.Colour(0x5865F2),
}


def get_embed_colour(category: EmbedCategory) -> discord.Colour:
    """Return the embed colour for the given category."""

    return _COLOURS.get(category, discord.Colour.default())


__all__ = ["EmbedCategory", "get_embed_colour"]
