from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from ..constants import (
    DEFAULT_SOFTBAN_DELETE_SECONDS,
    MAX_DELETE_MESSAGE_SECONDS,
    MAX_TIMER_KEY_SIZE,
    SOFTBAN_RELEASE_REASON,
    TIMED_BAN_EXPIRED_REASON,
)
from ..errors import IdempotentNoOp, PersistenceError, PreconditionError
from ..interfaces import ModerationLog, PlatformAdapter, TimedActionHandler, validate_timed_handler
from ..services.stats import RuntimeStats
from .models import ActionKind, ActionRecord, Moderator, NewActionRecord, Provenance, Target
from .reasons import bound_reason, build_audit_reason
from .scheduler import DelayScheduler, TimerHandle

log = logging.getLogger("warden.lifecycle")

Clock = Callable[[], datetime]
Kind = Union[ActionKind, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _kind(kind: Kind) -> str:
    return kind.value if isinstance(kind, ActionKind) else str(kind)


def _tag(moderator: Optional[Moderator]) -> Optional[str]:
    return moderator.tag if moderator is not None else None


class _BanReversal:
    """Lifting an expired ban means removing it on the platform."""

    def __init__(self, platform: PlatformAdapter) -> None:
        self._platform = platform

    async def on_expire(self, record: ActionRecord, provenance: str) -> None:
        try:
            await self._platform.remove_ban(record.community_id, record.actor_id, TIMED_BAN_EXPIRED_REASON)
        except IdempotentNoOp:
            log.debug("Ban for %s in %s was already lifted", record.actor_id, record.community_id)


class ActionLifecycleManager:
    """Issues punitive actions and reverses the timed ones exactly once.

    Pending expiries live in two places: the moderation log (durable) and an
    in-memory timer table keyed by ``kind:community:actor:record``. The table
    is rebuilt from the log by ``on_client_ready`` after a restart. Before any
    reversal the record is re-read, so an expunge, a manual unban or a
    concurrent recovery that got there first turns the expiry into a no-op.
    """

    def __init__(
        self,
        log_store: ModerationLog,
        platform: PlatformAdapter,
        scheduler: Optional[DelayScheduler] = None,
        *,
        clock: Clock = utcnow,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self.log_store = log_store
        self.platform = platform
        self.scheduler = scheduler or DelayScheduler()
        self.stats = stats or RuntimeStats()
        self._clock = clock
        self._timers: dict[str, TimerHandle] = {}
        self._handlers: dict[str, TimedActionHandler] = {}
        self._expiring: set[int] = set()
        self._recovered = False

        self.register_timed_action_handler(ActionKind.BAN, _BanReversal(platform))

    @property
    def active_timers(self) -> int:
        return len(self._timers)

    def has_timer(self, record: ActionRecord) -> bool:
        return self._timer_key(record) in self._timers

    # ---- issuing ----------------------------------------------------------

    async def ban(
        self,
        *,
        community_id: Optional[int],
        target: Optional[Target],
        moderator: Optional[Moderator] = None,
        reason: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ActionRecord:
        self._check_preconditions(community_id, target, "ban")
        assert community_id is not None and target is not None

        reason_text = bound_reason(reason)
        duration = max(0, int(duration_ms)) if duration_ms else 0
        issued_at = self._clock()
        expires_at = issued_at + timedelta(milliseconds=duration) if duration else None

        await self.platform.apply_ban(
            community_id, target, build_audit_reason(reason_text, _tag(moderator), expires_at)
        )
        self.stats.bans_applied += 1

        record = await self._persist(
            NewActionRecord(
                community_id=community_id,
                actor_id=target.actor_id,
                moderator_id=moderator.id if moderator else None,
                kind=ActionKind.BAN.value,
                reason=reason_text,
                duration_ms=duration or None,
                issued_at=issued_at,
                expires_at=expires_at,
                metadata={**(metadata or {}), "target_tag": target.tag},
            )
        )
        if record.expires_at is not None:
            self._schedule_timer(record, self._remaining_ms(record))
        return record

    async def softban(
        self,
        *,
        community_id: Optional[int],
        target: Optional[Target],
        moderator: Optional[Moderator] = None,
        reason: Optional[str] = None,
        delete_content_seconds: int = DEFAULT_SOFTBAN_DELETE_SECONDS,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ActionRecord:
        """Ban and immediately unban, purging recent content without a lasting ban."""
        self._check_preconditions(community_id, target, "softban")
        assert community_id is not None and target is not None

        reason_text = bound_reason(reason)
        delete_seconds = min(max(int(delete_content_seconds or 0), 0), MAX_DELETE_MESSAGE_SECONDS)

        await self.platform.apply_ban(
            community_id,
            target,
            build_audit_reason(reason_text, _tag(moderator)),
            delete_content_seconds=delete_seconds,
        )
        self.stats.softbans_applied += 1

        release_reason = build_audit_reason(SOFTBAN_RELEASE_REASON, _tag(moderator))
        try:
            record = await self._persist(
                NewActionRecord(
                    community_id=community_id,
                    actor_id=target.actor_id,
                    moderator_id=moderator.id if moderator else None,
                    kind=ActionKind.SOFTBAN.value,
                    reason=reason_text,
                    duration_ms=None,
                    issued_at=self._clock(),
                    expires_at=None,
                    metadata={
                        "delete_content_seconds": delete_seconds,
                        **(metadata or {}),
                        "target_tag": target.tag,
                    },
                )
            )
        except Exception:
            # Release anyway; the persistence error is what propagates.
            try:
                await self._lift(community_id, target.actor_id, release_reason)
            except Exception:
                log.exception("Softban release for %s in %s failed", target.actor_id, community_id)
            raise
        await self._lift(community_id, target.actor_id, release_reason)
        return record

    async def unban(
        self,
        *,
        community_id: Optional[int],
        actor_id: int,
        moderator: Optional[Moderator] = None,
        reason: Optional[str] = None,
    ) -> Optional[ActionRecord]:
        """Lift a ban by hand and close the matching ledger entry."""
        if not community_id:
            raise PreconditionError("Missing community context for unban.")
        try:
            await self.platform.remove_ban(community_id, actor_id, build_audit_reason(reason, _tag(moderator)))
        except IdempotentNoOp:
            raise PreconditionError("Ban not found.") from None
        return await self.on_ban_removed(community_id, actor_id)

    async def on_ban_removed(self, community_id: int, actor_id: int) -> Optional[ActionRecord]:
        """Reconcile the ledger after a ban disappeared on the platform.

        Called for unbans done through the bot and by hand in the client.
        """
        record = await self.log_store.find_latest_active(community_id, actor_id, ActionKind.BAN.value)
        if record is None or record.id in self._expiring:
            return None
        self.cancel_timer_for_entry(record)
        return await self.log_store.mark_completed(record.id, completed_at=self._clock(), provenance="manual")

    # ---- timed actions ----------------------------------------------------

    def register_timed_action_handler(self, kind: Kind, handler: TimedActionHandler) -> None:
        if not kind:
            raise ValueError("kind is required for timed handler registration")
        self._handlers[_kind(kind)] = validate_timed_handler(handler)

    def cancel_timer_for_entry(self, record: Optional[ActionRecord]) -> None:
        """Drop the in-memory timer for ``record``; persisted state is untouched."""
        if record is None:
            return
        self.scheduler.cancel(self._timers.pop(self._timer_key(record), None))

    async def expunge_case(
        self,
        *,
        community_id: Optional[int],
        case_number: Union[int, str],
        moderator_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Optional[ActionRecord]:
        try:
            number = int(case_number)
        except (TypeError, ValueError):
            raise PreconditionError("A numeric case number is required to expunge.") from None
        if not community_id:
            raise PreconditionError("Missing community context for expunge.")

        record = await self.log_store.get_by_case(community_id, number)
        if record is None or record.expunged_at is not None:
            return record

        self.cancel_timer_for_entry(record)
        try:
            return await self.log_store.expunge(
                community_id=community_id, case_number=number, moderator_id=moderator_id, reason=reason
            )
        except PersistenceError:
            log.error(
                "Case #%s in %s: timer cancelled but the expunge was not saved; it will re-arm on restart",
                number,
                community_id,
            )
            raise

    async def on_client_ready(self) -> int:
        """Re-arm or complete every pending timed action. Runs once per process."""
        if self._recovered:
            log.warning("Startup recovery already ran; ignoring repeated call")
            return 0
        self._recovered = True

        handled = 0
        for kind in list(self._handlers):
            try:
                pending = await self.log_store.get_active_timed_actions(kind)
            except Exception:
                log.exception("Could not load pending %s actions for startup recovery", kind)
                continue
            for record in pending:
                try:
                    await self._recover_one(record)
                    handled += 1
                except Exception:
                    log.exception("Startup recovery failed for record %s (%s)", record.id, kind)
        log.info("Startup recovery handled %d pending action(s); %d timer(s) armed", handled, self.active_timers)
        return handled

    def shutdown(self) -> int:
        handles = list(self._timers.values())
        self._timers.clear()
        for handle in handles:
            self.scheduler.cancel(handle)
        return len(handles)

    async def _recover_one(self, record: ActionRecord) -> None:
        if not record.is_pending:
            return
        remaining = self._remaining_ms(record)
        if remaining <= 0:
            await self._expire(record, "startup")
        else:
            self._schedule_timer(record, remaining)

    def _schedule_timer(self, record: ActionRecord, delay_ms: float) -> None:
        if record.expires_at is None:
            return
        if _kind(record.kind) not in self._handlers:
            log.warning("No timed handler for %s; record %s will not expire", record.kind, record.id)
            return

        key = self._timer_key(record)
        self.cancel_timer_for_entry(record)

        async def fire() -> None:
            if self._timers.get(key) is handle:
                del self._timers[key]
            await self._expire(record, "timer")

        handle = self.scheduler.schedule(delay_ms, fire)
        self._timers[key] = handle
        self.stats.timers_armed += 1

    async def _expire(self, record: ActionRecord, provenance: Provenance) -> bool:
        kind = _kind(record.kind)
        handler = self._handlers.get(kind)
        if handler is None:
            log.warning("No timed handler for %s; record %s left pending", kind, record.id)
            return False
        if record.id in self._expiring:
            log.debug("Record %s is already expiring; skipping %s trigger", record.id, provenance)
            return False

        self._expiring.add(record.id)
        try:
            fresh = await self.log_store.get_by_id(record.id)
            if fresh is None or fresh.completed_at is not None or fresh.expunged_at is not None:
                log.debug("Record %s no longer pending; skipping %s trigger", record.id, provenance)
                return False
            await handler.on_expire(fresh, provenance)
            await self.log_store.mark_completed(fresh.id, completed_at=self._clock(), provenance=provenance)
        except Exception:
            self.stats.expiries_failed += 1
            log.exception("Timed %s expiry failed for record %s (%s)", kind, record.id, provenance)
            return False
        finally:
            self._expiring.discard(record.id)

        self.stats.expiries_completed += 1
        log.info(
            "Timed %s expired: case #%s actor %s community %s (%s)",
            kind,
            fresh.case_number,
            fresh.actor_id,
            fresh.community_id,
            provenance,
        )
        return True

    # ---- helpers ----------------------------------------------------------

    async def _persist(self, fields: NewActionRecord) -> ActionRecord:
        try:
            return await self.log_store.record(fields)
        except PersistenceError:
            log.error(
                "%s of %s in %s was applied on the platform but could not be recorded%s",
                fields.kind,
                fields.actor_id,
                fields.community_id,
                "; its expiry is NOT scheduled" if fields.expires_at else "",
            )
            raise

    async def _lift(self, community_id: int, actor_id: int, audit_reason: str) -> bool:
        try:
            await self.platform.remove_ban(community_id, actor_id, audit_reason)
        except IdempotentNoOp:
            log.debug("Ban for %s in %s was already removed", actor_id, community_id)
            return False
        return True

    def _remaining_ms(self, record: ActionRecord) -> float:
        assert record.expires_at is not None
        return (record.expires_at - self._clock()).total_seconds() * 1000

    @staticmethod
    def _timer_key(record: ActionRecord) -> str:
        key = f"{_kind(record.kind)}:{record.community_id}:{record.actor_id}:{record.id}"
        return key[-MAX_TIMER_KEY_SIZE:]

    @staticmethod
    def _check_preconditions(community_id: Optional[int], target: Optional[Target], action: str) -> None:
        if target is None or not target.sanctionable:
            raise PreconditionError(f"Target not sanctionable for {action} (role/perms).")
        if not community_id:
            raise PreconditionError(f"Missing community context for {action}.")
