from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeStats:
    started_at: float = field(default_factory=time.time)
    bans_applied: int = 0
    softbans_applied: int = 0
    timers_armed: int = 0
    expiries_completed: int = 0
    expiries_failed: int = 0
    autobans: int = 0

    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)
