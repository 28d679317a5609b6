import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from warden.database import initialize_database
from warden.errors import PersistenceError
from warden.moderation.lifecycle import ActionLifecycleManager
from warden.moderation.models import NewActionRecord, Target
from warden.services.moderation_log_store import ModerationLogStore
from warden.testing.fakes import FakeClock, FakePlatform

T0 = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def _fields(community_id=1, actor_id=42, minutes=None, kind="ban", reason="spam", offset=0):
    issued = T0 + timedelta(seconds=offset)
    return NewActionRecord(
        community_id=community_id,
        actor_id=actor_id,
        moderator_id=7,
        kind=kind,
        reason=reason,
        duration_ms=minutes * 60_000 if minutes else None,
        issued_at=issued,
        expires_at=issued + timedelta(minutes=minutes) if minutes else None,
        metadata={"source": "test"},
    )


async def _store(tmp_path):
    store = ModerationLogStore(str(tmp_path / "warden.sqlite3"))
    await initialize_database(store._path, [store])
    return store


def test_case_numbers_are_sequential_per_community(tmp_path):
    async def main():
        store = await _store(tmp_path)
        a = await store.record(_fields(community_id=1))
        b = await store.record(_fields(community_id=1, offset=1))
        c = await store.record(_fields(community_id=2))
        return a, b, c, await store.get_by_case(1, 2)

    a, b, c, found = asyncio.run(main())

    assert (a.case_number, b.case_number, c.case_number) == (1, 2, 1)
    assert found.id == b.id
    assert a.metadata == {"source": "test"}
    assert a.issued_at == T0
    assert a.issued_at.tzinfo is not None
    assert a.state == "permanent"


def test_active_timed_actions_excludes_terminal_records(tmp_path):
    async def main():
        store = await _store(tmp_path)
        late = await store.record(_fields(minutes=30))
        soon = await store.record(_fields(actor_id=43, minutes=5))
        done = await store.record(_fields(actor_id=44, minutes=1))
        voided = await store.record(_fields(actor_id=45, minutes=1))
        await store.record(_fields(actor_id=46))
        await store.record(_fields(actor_id=47, minutes=1, kind="timeout"))

        await store.mark_completed(done.id, completed_at=T0, provenance="timer")
        await store.expunge(community_id=1, case_number=voided.case_number, moderator_id=7, reason="mistake")
        return late, soon, await store.get_active_timed_actions("ban")

    late, soon, active = asyncio.run(main())
    assert [r.id for r in active] == [soon.id, late.id]


def test_mark_completed_never_overwrites(tmp_path):
    async def main():
        store = await _store(tmp_path)
        rec = await store.record(_fields(minutes=1))
        first = await store.mark_completed(rec.id, completed_at=T0, provenance="timer")
        second = await store.mark_completed(rec.id, completed_at=T0 + timedelta(hours=1), provenance="startup")
        return first, second

    first, second = asyncio.run(main())

    assert first.completion_provenance == "timer"
    assert second.completion_provenance == "timer"
    assert second.completed_at == T0


def test_expunge_is_terminal_and_first_wins(tmp_path):
    async def main():
        store = await _store(tmp_path)
        rec = await store.record(_fields(minutes=10))
        first = await store.expunge(community_id=1, case_number=rec.case_number, moderator_id=9, reason=" appeal ")
        second = await store.expunge(community_id=1, case_number=rec.case_number, moderator_id=10, reason="again")
        missing = await store.expunge(community_id=1, case_number=404, moderator_id=9, reason=None)
        return first, second, missing

    first, second, missing = asyncio.run(main())

    assert first.state == "expunged"
    assert first.expunged_by == 9
    assert first.expunged_reason == "appeal"
    assert second.expunged_by == 9
    assert missing is None


def test_latest_active_listing_and_reason_update(tmp_path):
    async def main():
        store = await _store(tmp_path)
        old = await store.record(_fields(minutes=10))
        new = await store.record(_fields(minutes=10, offset=60))
        await store.expunge(community_id=1, case_number=new.case_number, moderator_id=7, reason=None)
        latest = await store.find_latest_active(1, 42, "ban")
        visible = await store.list_for_actor(1, 42)
        everything = await store.list_for_actor(1, 42, include_expunged=True)
        updated = await store.update_reason(1, old.case_number, "x" * 600)
        return old, new, latest, visible, everything, updated

    old, new, latest, visible, everything, updated = asyncio.run(main())

    assert latest.id == old.id
    assert [r.id for r in visible] == [old.id]
    assert [r.id for r in everything] == [new.id, old.id]
    assert len(updated.reason) == 512


def test_unreachable_database_raises_persistence_error(tmp_path):
    store = ModerationLogStore(str(tmp_path))

    with pytest.raises(PersistenceError):
        asyncio.run(store.init())


def test_restart_recovery_against_sqlite(tmp_path):
    async def main():
        store = await _store(tmp_path)
        platform = FakePlatform()
        clock = FakeClock(T0)
        first = ActionLifecycleManager(store, platform, clock=clock)
        rec = await first.ban(community_id=1, target=Target(42, "spammer#0001"), duration_ms=5_000)
        first.shutdown()

        clock.advance(6_000)
        reopened = ModerationLogStore(store._path)
        second = ActionLifecycleManager(reopened, platform, clock=clock)
        await second.on_client_ready()
        return rec, await reopened.get_by_id(rec.id), platform

    rec, done, platform = asyncio.run(main())

    assert rec.expires_at == T0 + timedelta(seconds=5)
    assert done.completion_provenance == "startup"
    assert done.completed_at == T0 + timedelta(seconds=6)
    assert done.metadata["target_tag"] == "spammer#0001"
    assert platform.banned == set()
