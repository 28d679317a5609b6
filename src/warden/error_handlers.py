from __future__ import annotations

import logging

import discord
from discord import app_commands

from .constants import ERROR_MESSAGES
from .errors import PersistenceError, PreconditionError
from .utils import error_embed, safe_response

log = logging.getLogger("warden.error_handlers")


async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
    """Centralized slash-command error handling."""
    original = error.original if isinstance(error, app_commands.CommandInvokeError) else error

    if isinstance(original, PreconditionError):
        await safe_response(interaction, embed=error_embed(str(original)))
        return

    if isinstance(original, app_commands.MissingPermissions):
        await safe_response(interaction, embed=error_embed(ERROR_MESSAGES["missing_permissions"]))
        return

    if isinstance(original, app_commands.NoPrivateMessage):
        await safe_response(interaction, embed=error_embed(ERROR_MESSAGES["guild_only"]))
        return

    if isinstance(original, app_commands.BotMissingPermissions):
        await safe_response(interaction, embed=error_embed("The bot lacks required permissions to run this command."))
        return

    if isinstance(original, PersistenceError):
        log.error("Persistence failure in /%s: %s", interaction.command.name if interaction.command else "?", original)
        await safe_response(interaction, embed=error_embed(ERROR_MESSAGES["database_error"]))
        return

    log.exception("Unexpected error in app command %s", interaction.command, exc_info=original)
    await safe_response(interaction, embed=error_embed(ERROR_MESSAGES["unexpected"]))


def setup_error_handlers(tree: app_commands.CommandTree) -> None:
    tree.on_error = on_app_command_error  # type: ignore[method-assign]
