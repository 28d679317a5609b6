from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from ..constants import AUTOBAN_PREFIX
from ..errors import ModerationError

if TYPE_CHECKING:
    from ..bot import WardenBot

log = logging.getLogger("warden.cogs.anti_spam")

URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)


def count_links(message: discord.Message) -> int:
    """URLs in the text, plus link embeds and attachments."""
    n = len(URL_RE.findall(message.content or ""))
    n += sum(1 for e in message.embeds if e.url)
    n += len(message.attachments)
    return n


def is_exempt(member: discord.Member) -> bool:
    perms = member.guild_permissions
    return member.bot or perms.administrator or perms.manage_messages


class AntiSpamCog(commands.Cog):
    def __init__(self, bot: "WardenBot") -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or not isinstance(message.author, discord.Member):
            return
        member = message.author
        if is_exempt(member):
            return

        result = self.bot.detector.record(message.guild.id, member.id, link_count=count_links(message))
        if not result.violated:
            return

        # A fresh window per ban; otherwise every follow-up message would re-trigger.
        self.bot.detector.clear(message.guild.id, member.id)
        try:
            record = await self.bot.moderation.ban(
                community_id=message.guild.id,
                target=self.bot.platform.describe_target(member),
                moderator=None,
                reason=f"{AUTOBAN_PREFIX} {result.reason}",
                metadata={
                    "source": "antispam",
                    "channel_id": message.channel.id,
                    "message_id": message.id,
                },
            )
        except (ModerationError, discord.HTTPException) as e:
            log.error("Auto-ban of %s in %s failed: %s", member.id, message.guild.id, e)
            return

        self.bot.stats.autobans += 1
        log.warning("Auto-banned %s in %s (%s), case #%s", member, message.guild.id, result.reason, record.case_number)

    @commands.Cog.listener()
    async def on_member_unban(self, guild: discord.Guild, user: discord.User) -> None:
        try:
            closed = await self.bot.moderation.on_ban_removed(guild.id, user.id)
        except ModerationError as e:
            log.error("Could not reconcile unban of %s in %s: %s", user.id, guild.id, e)
            return
        if closed is not None:
            log.info("Closed case #%s after unban of %s in %s", closed.case_number, user.id, guild.id)
