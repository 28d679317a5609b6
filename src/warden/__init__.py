"""Warden: moderation enforcement engine for Discord communities."""

__version__ = "0.1.0"
