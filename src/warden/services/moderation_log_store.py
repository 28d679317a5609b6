from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from ..errors import PersistenceError
from ..moderation.models import ActionRecord, NewActionRecord
from ..moderation.reasons import bound_reason
from .base import BaseService

_COLUMNS = (
    "id, case_number, community_id, actor_id, moderator_id, kind, reason, duration_ms, "
    "issued_at, expires_at, completed_at, completion_provenance, expunged_at, expunged_by, "
    "expunged_reason, metadata_json"
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ModerationLogStore(BaseService[ActionRecord]):
    """SQLite ledger of moderation actions with per-community case numbers."""

    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_actions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              case_number INTEGER NOT NULL,
              community_id INTEGER NOT NULL,
              actor_id INTEGER NOT NULL,
              moderator_id INTEGER NULL,
              kind TEXT NOT NULL,
              reason TEXT NOT NULL,
              duration_ms INTEGER NULL,
              issued_at TEXT NOT NULL,
              expires_at TEXT NULL,
              completed_at TEXT NULL,
              completion_provenance TEXT NULL,
              expunged_at TEXT NULL,
              expunged_by INTEGER NULL,
              expunged_reason TEXT NULL,
              metadata_json TEXT NOT NULL DEFAULT '{}',
              UNIQUE (community_id, case_number)
            )
            """
        )
        await db.execute(
            """
            CREATE TABLE IF NOT EXISTS moderation_counters (
              community_id INTEGER PRIMARY KEY,
              last_case_number INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_modactions_pending ON moderation_actions (kind, completed_at, expunged_at, expires_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_modactions_actor ON moderation_actions (community_id, actor_id, issued_at)"
        )

    def _from_row(self, row: aiosqlite.Row) -> ActionRecord:
        return ActionRecord(
            id=int(row["id"]),
            case_number=int(row["case_number"]),
            community_id=int(row["community_id"]),
            actor_id=int(row["actor_id"]),
            moderator_id=(int(row["moderator_id"]) if row["moderator_id"] is not None else None),
            kind=str(row["kind"]),
            reason=str(row["reason"]),
            duration_ms=(int(row["duration_ms"]) if row["duration_ms"] is not None else None),
            issued_at=_dt(row["issued_at"]),  # type: ignore[arg-type]
            expires_at=_dt(row["expires_at"]),
            completed_at=_dt(row["completed_at"]),
            completion_provenance=row["completion_provenance"],
            expunged_at=_dt(row["expunged_at"]),
            expunged_by=(int(row["expunged_by"]) if row["expunged_by"] is not None else None),
            expunged_reason=row["expunged_reason"],
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    @property
    def _get_query(self) -> str:
        return f"SELECT {_COLUMNS} FROM moderation_actions WHERE id = ?"

    async def record(self, fields: NewActionRecord) -> ActionRecord:
        duration = max(0, int(fields.duration_ms)) if fields.duration_ms is not None else None
        metadata_json = json.dumps(fields.metadata or {}, separators=(",", ":"), ensure_ascii=False, default=str)
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    """
                    INSERT INTO moderation_counters (community_id, last_case_number) VALUES (?, 1)
                    ON CONFLICT(community_id) DO UPDATE SET last_case_number = last_case_number + 1
                    """,
                    (int(fields.community_id),),
                )
                async with db.execute(
                    "SELECT last_case_number FROM moderation_counters WHERE community_id = ?",
                    (int(fields.community_id),),
                ) as cur:
                    row = await cur.fetchone()
                case_number = int(row[0]) if row else 1
                cur = await db.execute(
                    """
                    INSERT INTO moderation_actions (
                      case_number, community_id, actor_id, moderator_id, kind, reason,
                      duration_ms, issued_at, expires_at, metadata_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        case_number,
                        int(fields.community_id),
                        int(fields.actor_id),
                        fields.moderator_id,
                        str(fields.kind),
                        bound_reason(fields.reason),
                        duration,
                        _iso(fields.issued_at),
                        _iso(fields.expires_at),
                        metadata_json,
                    ),
                )
                record_id = int(cur.lastrowid)
                await db.commit()
        except aiosqlite.Error as e:
            self._logger.error("Failed to record %s for %s: %s", fields.kind, fields.actor_id, e)
            raise PersistenceError(f"Could not record {fields.kind} action: {e}") from e

        created = await self.get_by_id(record_id)
        if created is None:
            raise PersistenceError(f"Record {record_id} vanished after insert")
        return created

    async def get_by_id(self, record_id: int) -> Optional[ActionRecord]:
        return await self.get(int(record_id))

    async def get_by_case(self, community_id: int, case_number: int) -> Optional[ActionRecord]:
        return await self._fetch_one(
            f"SELECT {_COLUMNS} FROM moderation_actions WHERE community_id = ? AND case_number = ?",
            (int(community_id), int(case_number)),
        )

    async def get_active_timed_actions(self, kind: str) -> list[ActionRecord]:
        return await self._fetch_all(
            f"""
            SELECT {_COLUMNS} FROM moderation_actions
            WHERE kind = ? AND completed_at IS NULL AND expunged_at IS NULL AND expires_at IS NOT NULL
            ORDER BY expires_at ASC
            """,
            (str(kind),),
        )

    async def find_latest_active(self, community_id: int, actor_id: int, kind: str) -> Optional[ActionRecord]:
        return await self._fetch_one(
            f"""
            SELECT {_COLUMNS} FROM moderation_actions
            WHERE community_id = ? AND actor_id = ? AND kind = ?
              AND completed_at IS NULL AND expunged_at IS NULL
            ORDER BY issued_at DESC, id DESC
            LIMIT 1
            """,
            (int(community_id), int(actor_id), str(kind)),
        )

    async def list_for_actor(
        self, community_id: int, actor_id: int, limit: int = 10, include_expunged: bool = False
    ) -> list[ActionRecord]:
        limit = max(1, min(100, int(limit)))
        expunged_clause = "" if include_expunged else "AND expunged_at IS NULL"
        return await self._fetch_all(
            f"""
            SELECT {_COLUMNS} FROM moderation_actions
            WHERE community_id = ? AND actor_id = ? {expunged_clause}
            ORDER BY issued_at DESC, id DESC
            LIMIT ?
            """,
            (int(community_id), int(actor_id), limit),
        )

    async def mark_completed(
        self, record_id: int, *, completed_at: datetime, provenance: str
    ) -> Optional[ActionRecord]:
        await self._execute(
            """
            UPDATE moderation_actions SET completed_at = ?, completion_provenance = ?
            WHERE id = ? AND completed_at IS NULL
            """,
            (_iso(completed_at), str(provenance), int(record_id)),
        )
        return await self.get_by_id(record_id)

    async def expunge(
        self,
        *,
        community_id: int,
        case_number: int,
        moderator_id: Optional[int],
        reason: Optional[str],
    ) -> Optional[ActionRecord]:
        await self._execute(
            """
            UPDATE moderation_actions SET expunged_at = ?, expunged_by = ?, expunged_reason = ?
            WHERE community_id = ? AND case_number = ? AND expunged_at IS NULL
            """,
            (
                _iso(datetime.now(timezone.utc)),
                moderator_id,
                (reason or "").strip() or None,
                int(community_id),
                int(case_number),
            ),
        )
        return await self.get_by_case(community_id, case_number)

    async def update_reason(self, community_id: int, case_number: int, reason: Optional[str]) -> Optional[ActionRecord]:
        await self._execute(
            "UPDATE moderation_actions SET reason = ? WHERE community_id = ? AND case_number = ?",
            (bound_reason(reason), int(community_id), int(case_number)),
        )
        return await self.get_by_case(community_id, case_number)

    async def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(query, params)
                await db.commit()
                return int(cur.rowcount)
        except aiosqlite.Error as e:
            self._logger.error("Write failed: %s", e)
            raise PersistenceError(str(e)) from e
