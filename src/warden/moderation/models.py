from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional


class ActionKind(str, Enum):
    """Built-in punitive action kinds. Any other string is accepted as a custom kind."""

    BAN = "ban"
    SOFTBAN = "softban"
    TIMEOUT = "timeout"


Provenance = Literal["startup", "timer", "manual"]

RecordState = Literal["permanent", "pending", "completed", "expunged"]


@dataclass(frozen=True)
class DetectionResult:
    violated: bool
    reason: Optional[str] = None


@dataclass
class RateWindow:
    """Timestamps (epoch ms) of recent messages and links for one actor."""

    messages: deque[float] = field(default_factory=deque)
    links: deque[float] = field(default_factory=deque)


@dataclass(frozen=True)
class Target:
    """The actor a punitive action is aimed at, as seen by the platform."""

    actor_id: int
    tag: Optional[str] = None
    sanctionable: bool = True


@dataclass(frozen=True)
class Moderator:
    id: int
    tag: Optional[str] = None


@dataclass(frozen=True)
class NewActionRecord:
    """Fields handed to the moderation log; the store assigns id and case number."""

    community_id: int
    actor_id: int
    moderator_id: Optional[int]
    kind: str
    reason: str
    duration_ms: Optional[int]
    issued_at: datetime
    expires_at: Optional[datetime]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ActionRecord:
    id: int
    case_number: int
    community_id: int
    actor_id: int
    moderator_id: Optional[int]
    kind: str
    reason: str
    duration_ms: Optional[int]
    issued_at: datetime
    expires_at: Optional[datetime]
    completed_at: Optional[datetime] = None
    completion_provenance: Optional[str] = None
    expunged_at: Optional[datetime] = None
    expunged_by: Optional[int] = None
    expunged_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_pending(self) -> bool:
        return self.expires_at is not None and self.completed_at is None and self.expunged_at is None

    @property
    def state(self) -> RecordState:
        if self.expunged_at is not None:
            return "expunged"
        if self.completed_at is not None:
            return "completed"
        if self.expires_at is None:
            return "permanent"
        return "pending"
