from __future__ import annotations

from typing import Final

# Discord limits
MAX_AUDIT_REASON_LENGTH: Final[int] = 512
MAX_EMBED_DESCRIPTION: Final[int] = 4096
MAX_FIELD_VALUE: Final[int] = 1024
MAX_DELETE_MESSAGE_SECONDS: Final[int] = 7 * 24 * 60 * 60
UNKNOWN_BAN_ERROR_CODE: Final[int] = 10026

# Scheduling
# Largest single sleep handed to the event loop; longer delays are chained.
MAX_TIMER_STEP_MS: Final[int] = 2_147_483_647
MAX_TIMER_KEY_SIZE: Final[int] = 256

# Moderation defaults
DEFAULT_MOD_REASON: Final[str] = "No reason provided."
DEFAULT_SOFTBAN_DELETE_SECONDS: Final[int] = 86_400
SOFTBAN_RELEASE_REASON: Final[str] = "Softban release"
TIMED_BAN_EXPIRED_REASON: Final[str] = "Timed ban expired"
AUTOBAN_PREFIX: Final[str] = "[Auto-ban]"

# Anti-spam defaults
ANTI_SPAM_MSG_WINDOW_MS: Final[int] = 15_000
ANTI_SPAM_MSG_MAX_IN_WINDOW: Final[int] = 10
ANTI_SPAM_LINK_WINDOW_MS: Final[int] = 45_000
ANTI_SPAM_LINK_MAX_IN_WINDOW: Final[int] = 6

# Colors (hex values)
COLORS = {
    "default": 0x5865F2,
    "success": 0x57F287,
    "warning": 0xF1C40F,
    "error": 0xED4245,
}

# Error messages
ERROR_MESSAGES = {
    "missing_permissions": "You don't have permission to use this command.",
    "guild_only": "This command can only be used in a server.",
    "database_error": "A database error occurred. Please try again later.",
    "unexpected": "Something went wrong running that command.",
}
