from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from msgguard.core.retention.models import RetentionAction, RetentionScheduleEntry
from msgguard.core.sqlite import SqliteStore, day_start


class RetentionSqliteStore(SqliteStore):
    """
    One schedule row per message (message_id is the primary key).
    processed_at is written once, guarded by `processed_at IS NULL`.
    """

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS retention_schedule (
                  message_id TEXT PRIMARY KEY,
                  policy_id TEXT NOT NULL,
                  policy_version TEXT NOT NULL DEFAULT '',
                  expires_at REAL NOT NULL,
                  action TEXT NOT NULL,
                  processed_at REAL,
                  attempts INTEGER NOT NULL DEFAULT 0,
                  last_error TEXT NOT NULL DEFAULT '',
                  needs_review INTEGER NOT NULL DEFAULT 0,
                  is_educational_record INTEGER NOT NULL DEFAULT 0,
                  created_at REAL NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_retention_due ON retention_schedule(processed_at, needs_review, expires_at);")

    def _row(self, r: Any) -> RetentionScheduleEntry:
        return RetentionScheduleEntry(
            message_id=r["message_id"],
            policy_id=r["policy_id"],
            expires_at=float(r["expires_at"]),
            action=RetentionAction(r["action"]),
            processed_at=r["processed_at"],
            attempts=int(r["attempts"] or 0),
            last_error=r["last_error"] or "",
            needs_review=bool(r["needs_review"]),
            is_educational_record=bool(r["is_educational_record"]),
            created_at=float(r["created_at"]),
        )

    def create(self, entry: RetentionScheduleEntry, *, policy_version: str = "") -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO retention_schedule(message_id, policy_id, policy_version, expires_at, action, is_educational_record, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.message_id,
                    entry.policy_id,
                    str(policy_version),
                    float(entry.expires_at),
                    entry.action.value,
                    1 if entry.is_educational_record else 0,
                    float(entry.created_at),
                ),
            )
            return int(cur.rowcount or 0) == 1

    def get(self, message_id: str) -> Optional[RetentionScheduleEntry]:
        with self._read() as conn:
            r = conn.execute("SELECT * FROM retention_schedule WHERE message_id=?", (str(message_id),)).fetchone()
        return self._row(r) if r else None

    def due(self, now: float, *, limit: int = 500) -> List[RetentionScheduleEntry]:
        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM retention_schedule
                WHERE processed_at IS NULL AND needs_review=0 AND expires_at <= ?
                ORDER BY expires_at ASC LIMIT ?
                """,
                (float(now), int(limit)),
            ).fetchall()
        return [self._row(r) for r in rows]

    def mark_processed(self, message_id: str, *, now: float) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE retention_schedule SET processed_at=?, last_error='' WHERE message_id=? AND processed_at IS NULL",
                (float(now), str(message_id)),
            )
            return int(cur.rowcount or 0) == 1

    def record_failure(self, message_id: str, *, error: str, max_attempts: int) -> Tuple[int, bool]:
        """
        Returns (attempts, flagged_for_review).
        """
        with self._tx() as conn:
            conn.execute(
                """
                UPDATE retention_schedule
                SET attempts = attempts + 1,
                    last_error = ?,
                    needs_review = CASE WHEN attempts + 1 >= ? THEN 1 ELSE needs_review END
                WHERE message_id=? AND processed_at IS NULL
                """,
                (str(error)[:500], int(max_attempts), str(message_id)),
            )
            r = conn.execute("SELECT attempts, needs_review FROM retention_schedule WHERE message_id=?", (str(message_id),)).fetchone()
        if not r:
            return 0, False
        return int(r["attempts"]), bool(r["needs_review"])

    def update_expiry(self, message_id: str, *, expires_at: float) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE retention_schedule SET expires_at=? WHERE message_id=? AND processed_at IS NULL",
                (float(expires_at), str(message_id)),
            )
            return int(cur.rowcount or 0) == 1

    def existing(self, message_ids: Iterable[str]) -> Set[str]:
        ids = [str(x) for x in message_ids]
        out: Set[str] = set()
        with self._read() as conn:
            for i in range(0, len(ids), 500):
                chunk = ids[i : i + 500]
                marks = ",".join("?" for _ in chunk)
                for r in conn.execute(f"SELECT message_id FROM retention_schedule WHERE message_id IN ({marks})", chunk):
                    out.add(r["message_id"])
        return out

    def stats(self, *, now: float) -> Dict[str, Any]:
        today = day_start(now)
        with self._read() as conn:
            scheduled = conn.execute("SELECT COUNT(1) FROM retention_schedule WHERE processed_at IS NULL").fetchone()[0]
            due = conn.execute(
                "SELECT COUNT(1) FROM retention_schedule WHERE processed_at IS NULL AND needs_review=0 AND expires_at <= ?",
                (float(now),),
            ).fetchone()[0]
            records = conn.execute(
                "SELECT COUNT(1) FROM retention_schedule WHERE processed_at IS NULL AND is_educational_record=1"
            ).fetchone()[0]
            processed_today = conn.execute("SELECT COUNT(1) FROM retention_schedule WHERE processed_at >= ?", (today,)).fetchone()[0]
            flagged = conn.execute("SELECT COUNT(1) FROM retention_schedule WHERE processed_at IS NULL AND needs_review=1").fetchone()[0]
        return {
            "total_scheduled": int(scheduled or 0),
            "due_for_processing": int(due or 0),
            "educational_records": int(records or 0),
            "processed_today": int(processed_today or 0),
            "flagged_for_review": int(flagged or 0),
        }
