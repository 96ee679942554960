from __future__ import annotations

import logging
from typing import List

import discord

from ..verification.identity import shorten_identity
from ..verification.models import Target

logger = logging.getLogger("chain_role_bot.roles")


class DiscordRoleGrantor:
    """Role checks and grants for the Discord account linked to an identity."""

    def __init__(self, client: discord.Client, store) -> None:
        self.client = client
        self.store = store

    async def _members(self, identity: str) -> List[discord.Member]:
        link = await self.store.get_link_by_identity(identity)
        if link is None:
            return []
        member_id = int(link.discord_id)
        members: List[discord.Member] = []
        for guild in self.client.guilds:
            member = guild.get_member(member_id)
            if member is None:
                try:
                    member = await guild.fetch_member(member_id)
                except discord.NotFound:
                    continue
                except discord.HTTPException as exc:
                    logger.warning("Could not fetch member %s in guild %s: %s", member_id, guild.id, exc)
                    continue
            members.append(member)
        return members

    async def has_role(self, identity: str, target: Target) -> bool:
        for member in await self._members(identity):
            if member.get_role(target.role_id) is not None:
                return True
        return False

    async def grant_role(self, identity: str, target: Target) -> bool:
        granted = False
        for member in await self._members(identity):
            role = member.guild.get_role(target.role_id)
            if role is None:
                continue
            if member.get_role(role.id) is not None:
                granted = True
                continue
            try:
                await member.add_roles(role, reason=f"Verified {target.display_name}")
            except discord.Forbidden:
                logger.warning(
                    "Missing permission to assign role %s in guild %s (check role hierarchy)",
                    role.id,
                    member.guild.id,
                )
                continue
            except discord.HTTPException as exc:
                logger.warning("Failed to assign role %s to %s: %s", role.id, member.id, exc)
                continue
            granted = True
            logger.info(
                "Assigned role %s (%s) to %s for %s",
                role.name,
                target.id,
                member.id,
                shorten_identity(identity),
            )
        return granted
