from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from msgguard.core.moderation.models import (
    EntrySource,
    ModerationAction,
    ModerationQueueEntry,
    ModerationStatus,
    ModerationTransition,
    Priority,
    UserReport,
)
from msgguard.core.sqlite import SqliteStore, day_start

_ACTIVE = (ModerationStatus.PENDING.value, ModerationStatus.IN_REVIEW.value, ModerationStatus.ESCALATED.value)

# columns a transition may change
_MUTABLE = {"priority", "status", "assigned_moderator_id", "updated_at", "decided_at", "resolved_at", "resolution_notes"}


class ModerationSqliteStore(SqliteStore):
    """
    Moderation queue, transition history and user reports.

    Transitions are compare-and-swap updates on (id, version, status); the
    history row is written in the same transaction. Listing order is
    priority desc, created_at asc, then insertion order.
    """

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS moderation_queue (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT NOT NULL UNIQUE,
                  message_id TEXT NOT NULL UNIQUE,
                  priority TEXT NOT NULL,
                  priority_rank INTEGER NOT NULL,
                  status TEXT NOT NULL,
                  flagged_keywords TEXT NOT NULL DEFAULT '[]',
                  assigned_moderator_id TEXT,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  decided_at REAL,
                  resolved_at REAL,
                  resolution_notes TEXT,
                  version INTEGER NOT NULL DEFAULT 1,
                  source TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_modq_order ON moderation_queue(priority_rank DESC, created_at ASC, seq ASC);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_modq_updated ON moderation_queue(updated_at);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS moderation_history (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  entry_id TEXT NOT NULL,
                  message_id TEXT NOT NULL,
                  action TEXT NOT NULL,
                  from_status TEXT NOT NULL,
                  to_status TEXT NOT NULL,
                  from_priority TEXT NOT NULL,
                  to_priority TEXT NOT NULL,
                  moderator_id TEXT NOT NULL,
                  notes TEXT,
                  version INTEGER NOT NULL,
                  occurred_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_modh_action_ts ON moderation_history(action, occurred_at);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS moderation_reports (
                  report_id TEXT PRIMARY KEY,
                  message_id TEXT NOT NULL,
                  reporter_id TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  description TEXT,
                  priority TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  UNIQUE(message_id, reporter_id)
                )
                """
            )

    def _row(self, r: Any) -> ModerationQueueEntry:
        return ModerationQueueEntry(
            id=r["id"],
            message_id=r["message_id"],
            priority=Priority(r["priority"]),
            status=ModerationStatus(r["status"]),
            flagged_keywords=json.loads(r["flagged_keywords"] or "[]"),
            assigned_moderator_id=r["assigned_moderator_id"],
            created_at=float(r["created_at"]),
            updated_at=float(r["updated_at"]),
            decided_at=r["decided_at"],
            resolved_at=r["resolved_at"],
            resolution_notes=r["resolution_notes"],
            version=int(r["version"]),
            source=EntrySource(r["source"]),
            seq=int(r["seq"]),
        )

    def insert(self, entry: ModerationQueueEntry) -> Tuple[ModerationQueueEntry, bool]:
        """
        One entry per message. Returns (stored entry, created).
        """
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO moderation_queue(id, message_id, priority, priority_rank, status, flagged_keywords,
                    assigned_moderator_id, created_at, updated_at, version, source)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.message_id,
                    entry.priority.value,
                    entry.priority.rank,
                    entry.status.value,
                    json.dumps(sorted(entry.flagged_keywords)),
                    entry.assigned_moderator_id,
                    float(entry.created_at),
                    float(entry.updated_at),
                    int(entry.version),
                    entry.source.value,
                ),
            )
            created = int(cur.rowcount or 0) == 1
            r = conn.execute("SELECT * FROM moderation_queue WHERE message_id=?", (entry.message_id,)).fetchone()
        return self._row(r), created

    def get(self, entry_id: str) -> Optional[ModerationQueueEntry]:
        with self._read() as conn:
            r = conn.execute("SELECT * FROM moderation_queue WHERE id=?", (str(entry_id),)).fetchone()
        return self._row(r) if r else None

    def get_by_message(self, message_id: str) -> Optional[ModerationQueueEntry]:
        with self._read() as conn:
            r = conn.execute("SELECT * FROM moderation_queue WHERE message_id=?", (str(message_id),)).fetchone()
        return self._row(r) if r else None

    def cas_update(
        self,
        entry: ModerationQueueEntry,
        changes: Dict[str, Any],
        *,
        transition: Optional[ModerationTransition] = None,
    ) -> bool:
        """
        Apply changes iff the row still has entry.version and entry.status.
        Bumps version; appends the transition to history in the same commit.
        """
        bad = set(changes) - _MUTABLE
        if bad:
            raise ValueError(f"not mutable: {sorted(bad)}")
        cols: List[str] = []
        params: List[Any] = []
        for k, v in changes.items():
            if k == "priority":
                cols.append("priority=?")
                cols.append("priority_rank=?")
                params.extend([Priority(v).value, Priority(v).rank])
            elif k == "status":
                cols.append("status=?")
                params.append(ModerationStatus(v).value)
            else:
                cols.append(f"{k}=?")
                params.append(v)
        cols.append("version=version+1")
        params.extend([entry.id, int(entry.version), entry.status.value])
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE moderation_queue SET {', '.join(cols)} WHERE id=? AND version=? AND status=?",
                params,
            )
            if int(cur.rowcount or 0) != 1:
                return False
            if transition is not None:
                conn.execute(
                    """
                    INSERT INTO moderation_history(entry_id, message_id, action, from_status, to_status, from_priority,
                        to_priority, moderator_id, notes, version, occurred_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transition.entry_id,
                        transition.message_id,
                        transition.action.value,
                        transition.from_status.value,
                        transition.to_status.value,
                        transition.from_priority.value,
                        transition.to_priority.value,
                        transition.moderator_id,
                        transition.notes,
                        int(transition.version),
                        float(transition.occurred_at),
                    ),
                )
        return True

    def list_entries(
        self,
        *,
        priority: Optional[Priority] = None,
        status: Optional[ModerationStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ModerationQueueEntry]:
        where = []
        params: List[Any] = []
        if priority is not None:
            where.append("priority = ?")
            params.append(Priority(priority).value)
        if status is not None:
            where.append("status = ?")
            params.append(ModerationStatus(status).value)
        sql = "SELECT * FROM moderation_queue"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY priority_rank DESC, created_at ASC, seq ASC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row(r) for r in rows]

    def changed_since(self, ts: float, *, limit: int = 100) -> List[ModerationQueueEntry]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM moderation_queue WHERE updated_at > ? ORDER BY updated_at ASC, seq ASC LIMIT ?",
                (float(ts), int(limit)),
            ).fetchall()
        return [self._row(r) for r in rows]

    def last_change_at(self) -> float:
        with self._read() as conn:
            a = conn.execute("SELECT MAX(updated_at) FROM moderation_queue").fetchone()[0]
            b = conn.execute("SELECT MAX(created_at) FROM moderation_reports").fetchone()[0]
        return max(float(a or 0.0), float(b or 0.0))

    def history(self, entry_id: str) -> List[ModerationTransition]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM moderation_history WHERE entry_id=? ORDER BY id ASC", (str(entry_id),)).fetchall()
        return [
            ModerationTransition(
                entry_id=r["entry_id"],
                message_id=r["message_id"],
                action=ModerationAction(r["action"]),
                from_status=ModerationStatus(r["from_status"]),
                to_status=ModerationStatus(r["to_status"]),
                from_priority=Priority(r["from_priority"]),
                to_priority=Priority(r["to_priority"]),
                moderator_id=r["moderator_id"],
                notes=r["notes"],
                version=int(r["version"]),
                occurred_at=float(r["occurred_at"]),
            )
            for r in rows
        ]

    def existing(self, message_ids: Iterable[str]) -> Set[str]:
        ids = [str(x) for x in message_ids]
        out: Set[str] = set()
        with self._read() as conn:
            for i in range(0, len(ids), 500):
                chunk = ids[i : i + 500]
                marks = ",".join("?" for _ in chunk)
                for r in conn.execute(f"SELECT message_id FROM moderation_queue WHERE message_id IN ({marks})", chunk):
                    out.add(r["message_id"])
        return out

    # ---- reports ----
    def add_report(self, report: UserReport) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO moderation_reports(report_id, message_id, reporter_id, reason, description, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (report.report_id, report.message_id, report.reporter_id, report.reason.value, report.description, report.priority.value, float(report.created_at)),
            )
            return int(cur.rowcount or 0) == 1

    def report_count(self, message_id: str) -> int:
        with self._read() as conn:
            return int(conn.execute("SELECT COUNT(1) FROM moderation_reports WHERE message_id=?", (str(message_id),)).fetchone()[0])

    # ---- aggregates ----
    def counts(self, *, now: float) -> Dict[str, int]:
        today = day_start(now)
        with self._read() as conn:
            by_status = {r["status"]: int(r["n"]) for r in conn.execute("SELECT status, COUNT(1) AS n FROM moderation_queue GROUP BY status")}
            marks = ",".join("?" for _ in _ACTIVE)
            high = conn.execute(
                f"SELECT COUNT(1) FROM moderation_queue WHERE status IN ({marks}) AND priority_rank >= ?",
                [*_ACTIVE, Priority.HIGH.rank],
            ).fetchone()[0]
            decided = {
                r["action"]: int(r["n"])
                for r in conn.execute(
                    "SELECT action, COUNT(1) AS n FROM moderation_history WHERE occurred_at >= ? AND action IN (?, ?, ?) GROUP BY action",
                    (today, ModerationAction.APPROVE.value, ModerationAction.BLOCK.value, ModerationAction.ESCALATE.value),
                )
            }
            reports_today = conn.execute("SELECT COUNT(1) FROM moderation_reports WHERE created_at >= ?", (today,)).fetchone()[0]
        return {
            "pending": by_status.get(ModerationStatus.PENDING.value, 0),
            "in_review": by_status.get(ModerationStatus.IN_REVIEW.value, 0),
            "escalated": by_status.get(ModerationStatus.ESCALATED.value, 0),
            "awaiting_resolution": by_status.get(ModerationStatus.APPROVED.value, 0) + by_status.get(ModerationStatus.BLOCKED.value, 0),
            "resolved": by_status.get(ModerationStatus.RESOLVED.value, 0),
            "high_priority": int(high or 0),
            "approved_today": decided.get(ModerationAction.APPROVE.value, 0),
            "blocked_today": decided.get(ModerationAction.BLOCK.value, 0),
            "escalated_today": decided.get(ModerationAction.ESCALATE.value, 0),
            "reports_today": int(reports_today or 0),
        }
