"""
Interface contracts between the enforcement engine and its collaborators.

The lifecycle manager only talks to persistence and to the chat platform
through these protocols, so both can be swapped (SQLite store, in-memory
fakes, Discord adapter) without touching the engine.
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from .moderation.models import ActionRecord, NewActionRecord, Target


@runtime_checkable
class ModerationLog(Protocol):
    """Durable ledger of action records; the source of truth across restarts."""

    @abstractmethod
    async def record(self, fields: NewActionRecord) -> ActionRecord:
        """Create a record, allocating the next case number for its community."""
        ...

    @abstractmethod
    async def get_by_id(self, record_id: int) -> Optional[ActionRecord]:
        ...

    @abstractmethod
    async def get_by_case(self, community_id: int, case_number: int) -> Optional[ActionRecord]:
        ...

    @abstractmethod
    async def get_active_timed_actions(self, kind: str) -> list[ActionRecord]:
        """Records of ``kind`` with an expiry that are neither completed nor expunged."""
        ...

    @abstractmethod
    async def mark_completed(
        self, record_id: int, *, completed_at: datetime, provenance: str
    ) -> Optional[ActionRecord]:
        ...

    @abstractmethod
    async def expunge(
        self,
        *,
        community_id: int,
        case_number: int,
        moderator_id: Optional[int],
        reason: Optional[str],
    ) -> Optional[ActionRecord]:
        ...

    @abstractmethod
    async def find_latest_active(self, community_id: int, actor_id: int, kind: str) -> Optional[ActionRecord]:
        ...

    @abstractmethod
    async def list_for_actor(
        self, community_id: int, actor_id: int, limit: int = 10, include_expunged: bool = False
    ) -> list[ActionRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def update_reason(self, community_id: int, case_number: int, reason: Optional[str]) -> Optional[ActionRecord]:
        ...


@runtime_checkable
class PlatformAdapter(Protocol):
    """The chat platform as seen by the engine."""

    @abstractmethod
    async def apply_ban(
        self,
        community_id: int,
        target: Target,
        audit_reason: str,
        delete_content_seconds: int = 0,
    ) -> None:
        """Ban ``target``. Raises ``PreconditionError`` when the platform refuses."""
        ...

    @abstractmethod
    async def remove_ban(self, community_id: int, actor_id: int, audit_reason: str) -> None:
        """Lift a ban. Raises ``IdempotentNoOp`` when the actor is not banned."""
        ...


@runtime_checkable
class TimedActionHandler(Protocol):
    """Defines what reversing an expired action of one kind means."""

    @abstractmethod
    async def on_expire(self, record: ActionRecord, provenance: str) -> None:
        ...


def validate_timed_handler(handler: object) -> TimedActionHandler:
    """Validate and return a TimedActionHandler."""
    if not callable(getattr(handler, "on_expire", None)):
        raise TypeError(f"Timed handler {handler!r} must provide an on_expire function")
    return handler  # type: ignore[return-value]
