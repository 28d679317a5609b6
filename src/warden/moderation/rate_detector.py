from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Hashable, Optional

from ..constants import (
    ANTI_SPAM_LINK_MAX_IN_WINDOW,
    ANTI_SPAM_LINK_WINDOW_MS,
    ANTI_SPAM_MSG_MAX_IN_WINDOW,
    ANTI_SPAM_MSG_WINDOW_MS,
)
from .models import DetectionResult, RateWindow


@dataclass(frozen=True)
class AntiSpamConfig:
    msg_window_ms: int = ANTI_SPAM_MSG_WINDOW_MS
    msg_max_in_window: int = ANTI_SPAM_MSG_MAX_IN_WINDOW
    link_window_ms: int = ANTI_SPAM_LINK_WINDOW_MS
    link_max_in_window: int = ANTI_SPAM_LINK_MAX_IN_WINDOW


def _prune(stamps: deque[float], cutoff: float) -> None:
    # Wall-clock time can step backwards, so stale entries may sit anywhere.
    kept = [t for t in stamps if t >= cutoff]
    if len(kept) != len(stamps):
        stamps.clear()
        stamps.extend(kept)


class AbuseRateDetector:
    """Per-community, per-actor rolling windows of message and link rates.

    In-memory only; buckets are rebuilt lazily after a restart.
    """

    def __init__(self, config: AntiSpamConfig | None = None) -> None:
        self.config = config or AntiSpamConfig()
        self._state: dict[Hashable, dict[Hashable, RateWindow]] = {}

    def _bucket(self, community_id: Hashable, actor_id: Hashable) -> RateWindow:
        community = self._state.setdefault(community_id, {})
        window = community.get(actor_id)
        if window is None:
            window = community[actor_id] = RateWindow()
        return window

    def record(
        self,
        community_id: Hashable,
        actor_id: Hashable,
        link_count: int = 0,
        now: Optional[float] = None,
    ) -> DetectionResult:
        if now is None:
            now = time.time() * 1000
        cfg = self.config
        window = self._bucket(community_id, actor_id)

        window.messages.append(now)
        for _ in range(max(0, int(link_count))):
            window.links.append(now)

        _prune(window.messages, now - cfg.msg_window_ms)
        _prune(window.links, now - cfg.link_window_ms)

        if len(window.messages) >= cfg.msg_max_in_window:
            return DetectionResult(
                True,
                f"Message spam: {len(window.messages)}/{round(cfg.msg_window_ms / 1000)}s",
            )
        if len(window.links) >= cfg.link_max_in_window:
            return DetectionResult(
                True,
                f"Link spam: {len(window.links)}/{round(cfg.link_window_ms / 1000)}s",
            )
        return DetectionResult(False)

    def clear(self, community_id: Hashable, actor_id: Hashable) -> None:
        community = self._state.get(community_id)
        if community is None:
            return
        community.pop(actor_id, None)
        if not community:
            self._state.pop(community_id, None)

    def window(self, community_id: Hashable, actor_id: Hashable) -> Optional[RateWindow]:
        return self._state.get(community_id, {}).get(actor_id)
