import asyncio
from datetime import timedelta

import pytest

from warden.errors import PersistenceError, PreconditionError
from warden.moderation.lifecycle import ActionLifecycleManager
from warden.moderation.models import ActionRecord, Moderator, Target
from warden.testing.fakes import FakeClock, FakePlatform, InMemoryModerationLog

GUILD = 1
BAD = Target(actor_id=42, tag="spammer#0001")
MOD = Moderator(id=7, tag="mod#0001")


def _setup():
    store = InMemoryModerationLog()
    platform = FakePlatform()
    clock = FakeClock()
    return store, platform, clock, ActionLifecycleManager(store, platform, clock=clock)


def _overdue(store, clock, record_id, kind="ban", minutes_ago=5, actor_id=42):
    issued = clock.now - timedelta(minutes=minutes_ago + 1)
    return store.seed(
        ActionRecord(
            id=record_id,
            case_number=record_id,
            community_id=GUILD,
            actor_id=actor_id,
            moderator_id=MOD.id,
            kind=kind,
            reason="seeded",
            duration_ms=60_000,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=1),
        )
    )


def test_permanent_ban_is_recorded_without_timer():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, moderator=MOD, reason="  spam  ")
        zero = await mgr.ban(community_id=GUILD, target=Target(43), duration_ms=0)
        return platform, mgr, rec, zero

    platform, mgr, rec, zero = asyncio.run(main())

    assert rec.case_number == 1
    assert zero.case_number == 2
    assert rec.reason == "spam"
    assert zero.reason == "No reason provided."
    assert rec.expires_at is None and rec.duration_ms is None
    assert zero.expires_at is None
    assert rec.state == "permanent"
    assert rec.metadata["target_tag"] == "spammer#0001"
    assert zero.moderator_id is None
    assert mgr.active_timers == 0
    assert platform.apply_calls[0][2] == "spam - by mod#0001"


def test_timed_ban_expires_at_issue_time_plus_duration():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, moderator=MOD, reason="spam", duration_ms=5_000)
        armed = mgr.has_timer(rec)
        mgr.shutdown()
        return platform, clock, rec, armed

    platform, clock, rec, armed = asyncio.run(main())

    assert rec.expires_at == clock.now + timedelta(milliseconds=5_000)
    assert rec.duration_ms == 5_000
    assert armed is True
    assert platform.apply_calls[0][2].startswith("spam - by mod#0001 (until ")


def test_restart_after_expiry_completes_on_startup():
    async def main():
        store, platform, clock, first = _setup()
        rec = await first.ban(community_id=GUILD, target=BAD, moderator=MOD, reason="spam", duration_ms=5_000)
        first.shutdown()

        clock.advance(6_000)
        second = ActionLifecycleManager(store, platform, clock=clock)
        handled = await second.on_client_ready()
        return store, platform, clock, rec, handled

    store, platform, clock, rec, handled = asyncio.run(main())

    done = store.records[rec.id]
    assert handled == 1
    assert done.completion_provenance == "startup"
    assert done.completed_at == clock.now
    assert done.state == "completed"
    assert platform.remove_calls == [(GUILD, 42, "Timed ban expired")]
    assert (GUILD, 42) not in platform.banned


def test_timer_fires_and_completes_record():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=30)
        await asyncio.sleep(0.15)
        return store, platform, mgr, rec

    store, platform, mgr, rec = asyncio.run(main())

    assert store.records[rec.id].completion_provenance == "timer"
    assert len(platform.remove_calls) == 1
    assert mgr.active_timers == 0
    assert mgr.stats.expiries_completed == 1


def test_concurrent_expiry_reverses_once():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=60_000)
        clock.advance(61_000)
        results = await asyncio.gather(mgr._expire(rec, "timer"), mgr._expire(rec, "startup"))
        mgr.shutdown()
        return store, platform, results

    store, platform, results = asyncio.run(main())

    assert sorted(results) == [False, True]
    assert len(platform.remove_calls) == 1
    assert len(store.mark_completed_calls) == 1


def test_startup_recovery_and_live_timer_do_not_double_fire():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=40)
        clock.advance(1_000)
        await mgr.on_client_ready()
        await asyncio.sleep(0.15)
        return store, platform, rec

    store, platform, rec = asyncio.run(main())

    assert len(platform.remove_calls) == 1
    assert store.mark_completed_calls == [(rec.id, "startup")]


def test_expunge_preempts_expiry():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=50)
        expunged = await mgr.expunge_case(
            community_id=GUILD, case_number=str(rec.case_number), moderator_id=MOD.id, reason="appeal"
        )
        armed = mgr.has_timer(rec)
        await asyncio.sleep(0.15)
        again = await mgr.expunge_case(community_id=GUILD, case_number=rec.case_number, reason="other")
        return store, platform, rec, expunged, armed, again

    store, platform, rec, expunged, armed, again = asyncio.run(main())

    assert armed is False
    assert platform.remove_calls == []
    assert store.mark_completed_calls == []
    final = store.records[rec.id]
    assert final.state == "expunged"
    assert final.completed_at is None
    assert expunged.expunged_by == MOD.id
    assert again.expunged_reason == "appeal"


def test_expiry_skips_record_expunged_behind_the_timer():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=40)
        await store.expunge(community_id=GUILD, case_number=rec.case_number, moderator_id=None, reason=None)
        await asyncio.sleep(0.15)
        return store, platform, mgr

    store, platform, mgr = asyncio.run(main())

    assert platform.remove_calls == []
    assert store.mark_completed_calls == []
    assert mgr.stats.expiries_completed == 0


def test_expunge_case_validation():
    async def main():
        store, platform, clock, mgr = _setup()
        with pytest.raises(PreconditionError):
            await mgr.expunge_case(community_id=GUILD, case_number="abc")
        with pytest.raises(PreconditionError):
            await mgr.expunge_case(community_id=None, case_number=1)
        return await mgr.expunge_case(community_id=GUILD, case_number=99)

    assert asyncio.run(main()) is None


def test_softban_releases_and_clamps_delete_window():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.softban(community_id=GUILD, target=BAD, reason="cleanup", delete_content_seconds=10**9)
        return platform, mgr, rec

    platform, mgr, rec = asyncio.run(main())

    assert rec.kind == "softban"
    assert rec.expires_at is None
    assert rec.metadata["delete_content_seconds"] == 604_800
    assert platform.apply_calls[0][3] == 604_800
    assert platform.remove_calls[0][2] == "Softban release"
    assert platform.banned == set()
    assert mgr.active_timers == 0


class _GhostPlatform(FakePlatform):
    """Accepts bans that never stick, so the release finds nothing to remove."""

    async def apply_ban(self, community_id, target, audit_reason, delete_content_seconds=0):
        self.apply_calls.append((community_id, target.actor_id, audit_reason, delete_content_seconds))


def test_softban_tolerates_already_removed_ban():
    async def main():
        store = InMemoryModerationLog()
        mgr = ActionLifecycleManager(store, _GhostPlatform(), clock=FakeClock())
        return await mgr.softban(community_id=GUILD, target=BAD)

    rec = asyncio.run(main())
    assert rec.case_number == 1


def test_softban_releases_even_when_persistence_fails():
    async def main():
        store, platform, clock, mgr = _setup()
        store.fail_writes = True
        with pytest.raises(PersistenceError):
            await mgr.softban(community_id=GUILD, target=BAD)
        return platform

    platform = asyncio.run(main())
    assert platform.banned == set()
    assert len(platform.remove_calls) == 1


def test_softban_persistence_error_survives_a_failed_release(caplog):
    async def main():
        store, platform, clock, mgr = _setup()
        store.fail_writes = True
        platform.fail_remove = True
        with pytest.raises(PersistenceError):
            await mgr.softban(community_id=GUILD, target=BAD)
        return platform

    platform = asyncio.run(main())

    assert (GUILD, 42) in platform.banned
    assert any("Softban release" in r.getMessage() for r in caplog.records)


def test_preconditions_block_platform_calls():
    async def main():
        store, platform, clock, mgr = _setup()
        with pytest.raises(PreconditionError):
            await mgr.ban(community_id=GUILD, target=Target(42, sanctionable=False))
        with pytest.raises(PreconditionError):
            await mgr.ban(community_id=None, target=BAD)
        with pytest.raises(PreconditionError):
            await mgr.softban(community_id=GUILD, target=None)
        platform.refuse = True
        with pytest.raises(PreconditionError):
            await mgr.ban(community_id=GUILD, target=BAD, duration_ms=1_000)
        return store, platform, mgr

    store, platform, mgr = asyncio.run(main())

    assert platform.apply_calls == []
    assert store.records == {}
    assert mgr.active_timers == 0


def test_ban_persistence_failure_propagates_after_platform_action():
    async def main():
        store, platform, clock, mgr = _setup()
        store.fail_writes = True
        with pytest.raises(PersistenceError):
            await mgr.ban(community_id=GUILD, target=BAD, duration_ms=60_000)
        return platform, mgr

    platform, mgr = asyncio.run(main())
    assert (GUILD, 42) in platform.banned
    assert mgr.active_timers == 0


def test_recovery_arms_future_timers_and_runs_once():
    async def main():
        store, platform, clock, mgr = _setup()
        issued = clock.now
        future = store.seed(
            ActionRecord(
                id=1,
                case_number=1,
                community_id=GUILD,
                actor_id=42,
                moderator_id=None,
                kind="ban",
                reason="seeded",
                duration_ms=3_600_000,
                issued_at=issued,
                expires_at=issued + timedelta(hours=1),
            )
        )
        handled = await mgr.on_client_ready()
        repeated = await mgr.on_client_ready()
        armed = mgr.has_timer(future)
        cancelled = mgr.shutdown()
        return platform, handled, repeated, armed, cancelled

    platform, handled, repeated, armed, cancelled = asyncio.run(main())

    assert handled == 1
    assert repeated == 0
    assert armed is True
    assert cancelled == 1
    assert platform.remove_calls == []


def test_recovery_failures_are_isolated_per_record():
    async def main():
        store, platform, clock, mgr = _setup()
        first = _overdue(store, clock, 1, actor_id=42)
        second = _overdue(store, clock, 2, actor_id=43)
        platform.fail_remove = True
        await mgr.on_client_ready()

        store.fail_reads = True
        other = ActionLifecycleManager(store, platform, clock=clock)
        handled = await other.on_client_ready()
        return store, mgr, first, second, handled

    store, mgr, first, second, handled = asyncio.run(main())

    assert mgr.stats.expiries_failed == 2
    assert store.records[first.id].is_pending
    assert store.records[second.id].is_pending
    assert handled == 0


class _TimeoutLift:
    def __init__(self):
        self.seen = []

    async def on_expire(self, record, provenance):
        self.seen.append((record.id, provenance))


def test_custom_kind_handler_is_used_for_recovery():
    async def main():
        store, platform, clock, mgr = _setup()
        lift = _TimeoutLift()
        mgr.register_timed_action_handler("timeout", lift)
        rec = _overdue(store, clock, 5, kind="timeout")
        await mgr.on_client_ready()
        return store, platform, lift, rec

    store, platform, lift, rec = asyncio.run(main())

    assert lift.seen == [(rec.id, "startup")]
    assert store.records[rec.id].completion_provenance == "startup"
    assert platform.remove_calls == []


def test_register_handler_validation():
    async def main():
        store, platform, clock, mgr = _setup()
        with pytest.raises(ValueError):
            mgr.register_timed_action_handler("", _TimeoutLift())
        with pytest.raises(TypeError):
            mgr.register_timed_action_handler("timeout", object())

    asyncio.run(main())


def test_unban_closes_pending_ban():
    async def main():
        store, platform, clock, mgr = _setup()
        rec = await mgr.ban(community_id=GUILD, target=BAD, duration_ms=3_600_000)
        closed = await mgr.unban(community_id=GUILD, actor_id=42, moderator=MOD, reason="appeal")
        armed = mgr.has_timer(rec)
        with pytest.raises(PreconditionError, match="Ban not found"):
            await mgr.unban(community_id=GUILD, actor_id=42)
        nothing = await mgr.on_ban_removed(GUILD, 42)
        return platform, rec, closed, armed, nothing

    platform, rec, closed, armed, nothing = asyncio.run(main())

    assert closed.id == rec.id
    assert closed.completion_provenance == "manual"
    assert armed is False
    assert nothing is None
    assert platform.remove_calls[0][2] == "appeal - by mod#0001"


def test_fakes_satisfy_the_protocols():
    from warden.interfaces import ModerationLog, PlatformAdapter
    from warden.services.moderation_log_store import ModerationLogStore

    assert isinstance(InMemoryModerationLog(), ModerationLog)
    assert isinstance(ModerationLogStore(":memory:"), ModerationLog)
    assert isinstance(FakePlatform(), PlatformAdapter)
