from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import discord
from discord import app_commands
from discord.ext import commands

from ..constants import COLORS
from ..errors import PreconditionError
from ..moderation.durations import format_duration, parse_duration
from ..moderation.models import ActionRecord, Moderator
from ..utils import safe_embed, safe_response, success_embed, truncate_text

if TYPE_CHECKING:
    from ..bot import WardenBot

log = logging.getLogger("warden.cogs.moderation")


def _moderator(user: discord.abc.User) -> Moderator:
    return Moderator(id=user.id, tag=str(user))


def _ts(value) -> str:
    return discord.utils.format_dt(value, "f") if value else "n/a"


def record_embed(record: ActionRecord) -> discord.Embed:
    e = safe_embed(f"Case #{record.case_number} • {record.kind}", truncate_text(record.reason), COLORS["default"])
    e.add_field(name="Member", value=f"<@{record.actor_id}> ({record.actor_id})", inline=False)
    e.add_field(
        name="Moderator",
        value=f"<@{record.moderator_id}>" if record.moderator_id else "System",
        inline=True,
    )
    e.add_field(name="State", value=record.state, inline=True)
    if record.duration_ms:
        e.add_field(name="Duration", value=format_duration(record.duration_ms), inline=True)
        e.add_field(name="Expires", value=_ts(record.expires_at), inline=True)
    if record.completed_at:
        e.add_field(name="Lifted", value=f"{_ts(record.completed_at)} ({record.completion_provenance})", inline=False)
    if record.expunged_at:
        e.add_field(
            name="Expunged",
            value=f"{_ts(record.expunged_at)} • {truncate_text(record.expunged_reason or 'no reason', 200)}",
            inline=False,
        )
    return e


class ModerationCog(commands.Cog):
    case = app_commands.Group(
        name="case",
        description="Moderation case tools.",
        guild_only=True,
        default_permissions=discord.Permissions(moderate_members=True),
    )

    def __init__(self, bot: "WardenBot") -> None:
        self.bot = bot

    def _mod_log_channel(self, guild: discord.Guild) -> Optional[discord.TextChannel]:
        ch = discord.utils.get(guild.text_channels, name=self.bot.settings.mod_logs_channel_name)
        return ch if isinstance(ch, discord.TextChannel) else None

    async def _post_mod_log(self, guild: discord.Guild, record: ActionRecord) -> None:
        ch = self._mod_log_channel(guild)
        if ch is None:
            return
        try:
            await ch.send(embed=record_embed(record))
        except discord.HTTPException as e:
            log.warning("Could not post case #%s to mod log: %s", record.case_number, e)

    @app_commands.command(name="ban", description="Ban a member, optionally for a limited time.")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(ban_members=True)
    @app_commands.describe(duration="e.g. 7d12h, 90 minutes, permanent")
    async def ban(
        self,
        interaction: discord.Interaction,
        member: discord.Member,
        reason: Optional[str] = None,
        duration: Optional[str] = None,
    ) -> None:
        assert interaction.guild is not None
        try:
            parsed = parse_duration(duration)
        except ValueError as e:
            raise PreconditionError(f"Invalid duration: {e}") from e

        await interaction.response.defer(ephemeral=True)
        record = await self.bot.moderation.ban(
            community_id=interaction.guild.id,
            target=self.bot.platform.describe_target(member),
            moderator=_moderator(interaction.user),
            reason=reason,
            duration_ms=parsed.ms if parsed else None,
            metadata={"source": "command", "channel_id": interaction.channel_id},
        )
        await self._post_mod_log(interaction.guild, record)

        suffix = f" for {parsed.human}" if parsed and parsed.ms else ""
        await interaction.followup.send(
            embed=success_embed(f"Banned **{member}**{suffix}. Case #{record.case_number}."),
            ephemeral=True,
        )

    @app_commands.command(name="softban", description="Ban and immediately unban to purge recent messages.")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(ban_members=True)
    async def softban(
        self,
        interaction: discord.Interaction,
        member: discord.Member,
        reason: Optional[str] = None,
        delete_days: Optional[app_commands.Range[int, 0, 7]] = None,
    ) -> None:
        assert interaction.guild is not None
        await interaction.response.defer(ephemeral=True)
        record = await self.bot.moderation.softban(
            community_id=interaction.guild.id,
            target=self.bot.platform.describe_target(member),
            moderator=_moderator(interaction.user),
            reason=reason,
            delete_content_seconds=(
                self.bot.settings.softban_delete_seconds if delete_days is None else int(delete_days) * 86_400
            ),
        )
        await self._post_mod_log(interaction.guild, record)
        await interaction.followup.send(
            embed=success_embed(f"Softbanned **{member}**. Case #{record.case_number}."),
            ephemeral=True,
        )

    @app_commands.command(name="unban", description="Remove a ban by user ID.")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(ban_members=True)
    async def unban(self, interaction: discord.Interaction, user_id: str, reason: Optional[str] = None) -> None:
        assert interaction.guild is not None
        if not user_id.strip().isdigit():
            raise PreconditionError("User ID must be numeric.")
        await interaction.response.defer(ephemeral=True)
        record = await self.bot.moderation.unban(
            community_id=interaction.guild.id,
            actor_id=int(user_id),
            moderator=_moderator(interaction.user),
            reason=reason,
        )
        closed = f" Closed case #{record.case_number}." if record else ""
        await interaction.followup.send(embed=success_embed(f"Removed ban for `{user_id}`.{closed}"), ephemeral=True)

    @app_commands.command(name="cases", description="Show recent cases for a member.")
    @app_commands.guild_only()
    @app_commands.checks.has_permissions(moderate_members=True)
    async def cases(self, interaction: discord.Interaction, user: discord.User, include_expunged: bool = False) -> None:
        assert interaction.guild is not None
        await interaction.response.defer(ephemeral=True)
        rows = await self.bot.moderation_log.list_for_actor(
            interaction.guild.id, user.id, limit=10, include_expunged=include_expunged
        )
        if not rows:
            await interaction.followup.send("No cases.", ephemeral=True)
            return
        e = safe_embed(f"Cases: {user}", "", COLORS["default"])
        for c in rows:
            e.add_field(name=f"#{c.case_number} • {c.kind} • {c.state}", value=truncate_text(c.reason, 250), inline=False)
        await interaction.followup.send(embed=e, ephemeral=True)

    @app_commands.command(name="modstats", description="Show moderation runtime stats.")
    @app_commands.checks.has_permissions(manage_guild=True)
    async def modstats(self, interaction: discord.Interaction) -> None:
        s = self.bot.stats
        msg = (
            f"📊 **Warden Stats**\n"
            f"• Uptime: **{format_duration(s.uptime_seconds() * 1000)}**\n"
            f"• Bans applied: **{s.bans_applied}**\n"
            f"• Softbans applied: **{s.softbans_applied}**\n"
            f"• Auto-bans: **{s.autobans}**\n"
            f"• Timers armed: **{s.timers_armed}** (pending now: **{self.bot.moderation.active_timers}**)\n"
            f"• Expiries completed: **{s.expiries_completed}**\n"
            f"• Expiries failed: **{s.expiries_failed}**\n"
        )
        await safe_response(interaction, msg)

    @case.command(name="show", description="Show a specific case.")
    async def case_show(self, interaction: discord.Interaction, number: int) -> None:
        assert interaction.guild is not None
        record = await self.bot.moderation_log.get_by_case(interaction.guild.id, number)
        if record is None:
            raise PreconditionError("Case not found.")
        await safe_response(interaction, embed=record_embed(record))

    @case.command(name="expunge", description="Void a case; a pending timed action will not run.")
    async def case_expunge(self, interaction: discord.Interaction, number: int, reason: Optional[str] = None) -> None:
        assert interaction.guild is not None
        await interaction.response.defer(ephemeral=True)
        record = await self.bot.moderation.expunge_case(
            community_id=interaction.guild.id,
            case_number=number,
            moderator_id=interaction.user.id,
            reason=reason,
        )
        if record is None:
            raise PreconditionError("Case not found.")
        await interaction.followup.send(embed=record_embed(record), ephemeral=True)

    @case.command(name="reason", description="Update the reason of a case.")
    async def case_reason(self, interaction: discord.Interaction, number: int, reason: str) -> None:
        assert interaction.guild is not None
        record = await self.bot.moderation_log.update_reason(interaction.guild.id, number, reason)
        if record is None:
            raise PreconditionError("Case not found.")
        await safe_response(interaction, embed=record_embed(record))
