from __future__ import annotations

import logging
from typing import Any

import discord

from .constants import COLORS, MAX_EMBED_DESCRIPTION, MAX_FIELD_VALUE

log = logging.getLogger("warden.utils")


def safe_embed(title: str, description: str, color: int = COLORS["default"]) -> discord.Embed:
    """Create an embed with safe length limits."""
    if len(description) > MAX_EMBED_DESCRIPTION:
        description = description[:MAX_EMBED_DESCRIPTION - 1] + "…"
    return discord.Embed(title=title[:256], description=description, color=color)


def error_embed(message: str) -> discord.Embed:
    return safe_embed("Error", message, COLORS["error"])


def success_embed(message: str) -> discord.Embed:
    return safe_embed("Done", message, COLORS["success"])


def truncate_text(text: str, max_length: int = MAX_FIELD_VALUE) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length - 1] + "…"


async def safe_response(
    interaction: discord.Interaction,
    content: str | None = None,
    embed: discord.Embed | None = None,
    ephemeral: bool = True,
    **kwargs: Any,
) -> bool:
    """Respond to an interaction whether or not it was already deferred."""
    try:
        if interaction.response.is_done():
            await interaction.followup.send(content=content, embed=embed, ephemeral=ephemeral, **kwargs)
        else:
            await interaction.response.send_message(content=content, embed=embed, ephemeral=ephemeral, **kwargs)
        return True
    except discord.HTTPException as e:
        log.error("Failed to send response: %s", e)
        return False
