from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import (
    ANTI_SPAM_LINK_MAX_IN_WINDOW,
    ANTI_SPAM_LINK_WINDOW_MS,
    ANTI_SPAM_MSG_MAX_IN_WINDOW,
    ANTI_SPAM_MSG_WINDOW_MS,
    DEFAULT_SOFTBAN_DELETE_SECONDS,
    MAX_TIMER_STEP_MS,
)
from .moderation.rate_detector import AntiSpamConfig


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


@dataclass(frozen=True)
class Settings:
    token: str
    sync_guild_id: int
    sqlite_path: str
    log_level: str
    anti_spam_enabled: bool
    anti_spam_msg_window_ms: int
    anti_spam_msg_max_in_window: int
    anti_spam_link_window_ms: int
    anti_spam_link_max_in_window: int
    max_timer_step_ms: int
    softban_delete_seconds: int
    # Link counting reads message content, which needs the privileged intent.
    message_content_intent: bool = True
    mod_logs_channel_name: str = "mod-logs"

    def anti_spam(self) -> AntiSpamConfig:
        return AntiSpamConfig(
            msg_window_ms=self.anti_spam_msg_window_ms,
            msg_max_in_window=self.anti_spam_msg_max_in_window,
            link_window_ms=self.anti_spam_link_window_ms,
            link_max_in_window=self.anti_spam_link_max_in_window,
        )


def load_settings() -> Settings:
    token = os.getenv("DISCORD_TOKEN", "").strip()
    if not token:
        raise RuntimeError("DISCORD_TOKEN is required")
    return Settings(
        token=token,
        sync_guild_id=_get_int("SYNC_GUILD_ID", 0),
        sqlite_path=_get_str("SQLITE_PATH", "warden.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        anti_spam_enabled=_get_bool("ANTI_SPAM_ENABLED", True),
        anti_spam_msg_window_ms=_get_int("ANTI_SPAM_MSG_WINDOW_MS", ANTI_SPAM_MSG_WINDOW_MS),
        anti_spam_msg_max_in_window=_get_int("ANTI_SPAM_MSG_MAX_IN_WINDOW", ANTI_SPAM_MSG_MAX_IN_WINDOW),
        anti_spam_link_window_ms=_get_int("ANTI_SPAM_LINK_WINDOW_MS", ANTI_SPAM_LINK_WINDOW_MS),
        anti_spam_link_max_in_window=_get_int("ANTI_SPAM_LINK_MAX_IN_WINDOW", ANTI_SPAM_LINK_MAX_IN_WINDOW),
        max_timer_step_ms=max(1, _get_int("MAX_TIMER_STEP_MS", MAX_TIMER_STEP_MS)),
        softban_delete_seconds=_get_int("SOFTBAN_DELETE_SECONDS", DEFAULT_SOFTBAN_DELETE_SECONDS),
        message_content_intent=_get_bool("MESSAGE_CONTENT_INTENT", True),
        mod_logs_channel_name=_get_str("MOD_LOGS_CHANNEL_NAME", "mod-logs"),
    )
