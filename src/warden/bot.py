from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands

from .config import Settings
from .database import initialize_database
from .error_handlers import setup_error_handlers
from .moderation.lifecycle import ActionLifecycleManager
from .moderation.rate_detector import AbuseRateDetector
from .moderation.scheduler import DelayScheduler
from .services.discord_platform import DiscordPlatformAdapter
from .services.moderation_log_store import ModerationLogStore
from .services.stats import RuntimeStats

log = logging.getLogger("warden.bot")


class _CommandSyncManager:
    def __init__(self, bot: "WardenBot") -> None:
        self.bot = bot
        self._lock = asyncio.Lock()

    async def sync_startup(self) -> None:
        async with self._lock:
            guild_id = self.bot.settings.sync_guild_id
            if guild_id:
                guild = discord.Object(id=guild_id)
                self.bot.tree.copy_global_to(guild=guild)
                await self.bot.tree.sync(guild=guild)
                log.info("Commands synced to guild %d", guild_id)
            else:
                await self.bot.tree.sync()
                log.info("Commands synced globally")
            for c in self.bot.tree.get_commands():
                log.info(" - /%s", c.name)


class WardenBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.members = True
        intents.moderation = True
        intents.message_content = bool(settings.message_content_intent)

        log.info("INTENTS: members=%s moderation=%s message_content=%s", intents.members, intents.moderation, intents.message_content)

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
            help_command=None,
        )

        self.settings = settings
        self.stats = RuntimeStats()

        self.moderation_log = ModerationLogStore(settings.sqlite_path)
        self.platform = DiscordPlatformAdapter(self)
        self.scheduler = DelayScheduler(max_step_ms=settings.max_timer_step_ms)
        self.moderation = ActionLifecycleManager(
            self.moderation_log,
            self.platform,
            self.scheduler,
            stats=self.stats,
        )
        self.detector = AbuseRateDetector(settings.anti_spam())
        self._sync_mgr = _CommandSyncManager(self)

    async def setup_hook(self) -> None:
        await initialize_database(self.settings.sqlite_path, [self.moderation_log])

        setup_error_handlers(self.tree)

        loaded: list[str] = []
        failed: list[str] = []

        # A cog that fails to load is logged and skipped; the rest still register.
        async def _load_cog(import_path: str, class_name: str) -> None:
            try:
                mod = __import__(import_path, fromlist=[class_name])
                cls = getattr(mod, class_name)
                await self.add_cog(cls(self))
                loaded.append(f"{import_path}.{class_name}")
            except Exception as e:
                log.exception("Failed to load cog: %s.%s", import_path, class_name)
                failed.append(f"{import_path}.{class_name} ({type(e).__name__})")

        await _load_cog("warden.cogs.moderation", "ModerationCog")
        if self.settings.anti_spam_enabled:
            if not self.intents.message_content:
                log.warning("ANTI_SPAM_ENABLED without message_content intent; link counting sees attachments only")
            await _load_cog("warden.cogs.anti_spam", "AntiSpamCog")

        log.info("Startup cog load summary: loaded=%d failed=%d", len(loaded), len(failed))
        for name in failed:
            log.warning("Startup cog failed: %s", name)

        await self._sync_mgr.sync_startup()

    async def on_ready(self) -> None:
        log.info("Logged in as %s (%s)", self.user, self.user.id if self.user else "?")
        # on_ready fires again after every reconnect; recovery itself runs once.
        try:
            await self.moderation.on_client_ready()
        except Exception:
            log.exception("Moderation startup recovery failed")

    async def close(self) -> None:
        try:
            cancelled = self.moderation.shutdown()
            log.info("Cancelled %d pending moderation timer(s) on shutdown", cancelled)
        finally:
            await super().close()
