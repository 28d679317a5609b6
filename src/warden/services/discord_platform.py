from __future__ import annotations

import logging

import discord

from ..constants import UNKNOWN_BAN_ERROR_CODE
from ..errors import IdempotentNoOp, PreconditionError
from ..moderation.models import Target

log = logging.getLogger("warden.discord_platform")


def is_unknown_ban(error: discord.HTTPException) -> bool:
    return error.code == UNKNOWN_BAN_ERROR_CODE or "unknown ban" in str(error).lower()


class DiscordPlatformAdapter:
    """PlatformAdapter backed by a discord.py client."""

    def __init__(self, client: discord.Client) -> None:
        self.client = client

    async def _guild(self, community_id: int) -> discord.Guild:
        guild = self.client.get_guild(int(community_id))
        if guild is not None:
            return guild
        try:
            return await self.client.fetch_guild(int(community_id))
        except (discord.NotFound, discord.Forbidden) as e:
            raise PreconditionError(f"Community {community_id} is not reachable.") from e

    def describe_target(self, member: discord.Member) -> Target:
        """Build a Target, deciding whether the bot may ban this member."""
        guild = member.guild
        me = guild.me
        sanctionable = (
            me is not None
            and me.guild_permissions.ban_members
            and member.id != guild.owner_id
            and member.id != me.id
            and me.top_role > member.top_role
        )
        return Target(actor_id=member.id, tag=str(member), sanctionable=bool(sanctionable))

    async def apply_ban(
        self,
        community_id: int,
        target: Target,
        audit_reason: str,
        delete_content_seconds: int = 0,
    ) -> None:
        guild = await self._guild(community_id)
        try:
            await guild.ban(
                discord.Object(id=target.actor_id),
                reason=audit_reason,
                delete_message_seconds=max(0, int(delete_content_seconds)),
            )
        except discord.Forbidden as e:
            raise PreconditionError(f"Not allowed to ban {target.tag or target.actor_id}.") from e
        log.debug("Banned %s in %s", target.actor_id, community_id)

    async def remove_ban(self, community_id: int, actor_id: int, audit_reason: str) -> None:
        guild = await self._guild(community_id)
        try:
            await guild.unban(discord.Object(id=int(actor_id)), reason=audit_reason)
        except discord.NotFound as e:
            if is_unknown_ban(e):
                raise IdempotentNoOp(f"{actor_id} is not banned in {community_id}") from e
            raise
        except discord.Forbidden as e:
            raise PreconditionError(f"Not allowed to unban {actor_id}.") from e
        log.debug("Unbanned %s in %s", actor_id, community_id)
