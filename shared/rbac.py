"""Role-based access checks for the admin command surface."""

from __future__ import annotations

import discord
from discord.ext import commands

from shared.config import get_admin_role_ids

__all__ = ["admin_only", "is_admin_member"]


def is_admin_member(member: discord.abc.User | discord.Member | None) -> bool:
    """Guild administrators and holders of ``ADMIN_ROLE_IDS`` pass."""

    if not isinstance(member, discord.Member):
        return False
    perms = getattr(member, "guild_permissions", None)
    if perms is not None and perms.administrator:
        return True
    admin_roles = get_admin_role_ids()
    if not admin_roles:
        return False
    return any(role.id in admin_roles for role in getattr(member, "roles", ()))


def admin_only():
    async def predicate(ctx: commands.Context) -> bool:
        if ctx.guild is None:
            raise commands.NoPrivateMessage()
        if not is_admin_member(ctx.author):
            raise commands.CheckFailure("Admin role required.")
        return True

    return commands.check(predicate)
