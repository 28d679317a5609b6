from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO") -> None:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=True)
    # discord.http logs every rate-limit bucket at INFO
    logging.getLogger("discord.http").setLevel(logging.WARNING)
    logging.getLogger("warden").setLevel(resolved)
