from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from msgguard.core.audit.models import AuditEventType, AuditLogEntry
from msgguard.core.sqlite import SqliteStore


class AuditSqliteStore(SqliteStore):
    """
    Durable audit entries.

    append_batch writes a whole batch in one transaction; INSERT OR IGNORE on
    the dedup identity makes re-delivery idempotent. seq preserves insertion
    order, which keeps a message's entries in enqueue order.
    """

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_entries (
                  seq INTEGER PRIMARY KEY AUTOINCREMENT,
                  id TEXT NOT NULL UNIQUE,
                  message_id TEXT NOT NULL,
                  event_type TEXT NOT NULL,
                  dedup_key TEXT NOT NULL DEFAULT '',
                  subject_id TEXT,
                  payload TEXT NOT NULL,
                  occurred_at REAL NOT NULL,
                  persisted_at REAL NOT NULL,
                  UNIQUE(message_id, event_type, dedup_key)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_type_ts ON audit_entries(event_type, occurred_at);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_entries(subject_id, occurred_at);")

    def append_batch(self, entries: List[AuditLogEntry]) -> Tuple[int, int]:
        """
        Returns (inserted, duplicates).
        """
        if not entries:
            return 0, 0
        now = time.time()
        inserted = 0
        with self._tx() as conn:
            for e in entries:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO audit_entries(id, message_id, event_type, dedup_key, subject_id, payload, occurred_at, persisted_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (e.id, e.message_id, e.event_type.value, e.dedup_key, e.subject_id, json.dumps(e.payload, ensure_ascii=False, sort_keys=True), float(e.occurred_at), now),
                )
                inserted += int(cur.rowcount or 0)
        return inserted, len(entries) - inserted

    def _row_to_entry(self, r: Any) -> AuditLogEntry:
        return AuditLogEntry(
            id=r["id"],
            message_id=r["message_id"],
            event_type=AuditEventType(r["event_type"]),
            payload=json.loads(r["payload"] or "{}"),
            occurred_at=float(r["occurred_at"]),
            flushed=True,
            dedup_key=r["dedup_key"] or "",
            subject_id=r["subject_id"],
        )

    def trail(self, message_id: str, *, limit: int = 500) -> List[AuditLogEntry]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_entries WHERE message_id=? ORDER BY seq ASC LIMIT ?",
                (str(message_id), int(limit)),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def query(
        self,
        *,
        event_type: Optional[AuditEventType] = None,
        subject_id: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        where = []
        params: List[Any] = []
        if event_type is not None:
            where.append("event_type = ?")
            params.append(AuditEventType(event_type).value)
        if subject_id:
            where.append("subject_id = ?")
            params.append(str(subject_id))
        if since is not None:
            where.append("occurred_at >= ?")
            params.append(float(since))
        if until is not None:
            where.append("occurred_at <= ?")
            params.append(float(until))
        sql = "SELECT * FROM audit_entries"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY occurred_at DESC, seq DESC LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def exists(self, message_id: str, event_type: AuditEventType, dedup_key: str = "") -> bool:
        with self._read() as conn:
            row = conn.execute(
                "SELECT 1 FROM audit_entries WHERE message_id=? AND event_type=? AND dedup_key=?",
                (str(message_id), AuditEventType(event_type).value, str(dedup_key)),
            ).fetchone()
        return row is not None

    def messages_with(self, event_type: AuditEventType, message_ids: Iterable[str]) -> Set[str]:
        ids = [str(x) for x in message_ids]
        out: Set[str] = set()
        with self._read() as conn:
            # chunk to stay under the sqlite variable limit
            for i in range(0, len(ids), 500):
                chunk = ids[i : i + 500]
                marks = ",".join("?" for _ in chunk)
                for r in conn.execute(
                    f"SELECT DISTINCT message_id FROM audit_entries WHERE event_type=? AND message_id IN ({marks})",
                    [AuditEventType(event_type).value, *chunk],
                ):
                    out.add(r["message_id"])
        return out

    def counts(self, *, since: Optional[float] = None) -> Dict[str, Any]:
        where = ""
        params: List[Any] = []
        if since is not None:
            where = " WHERE occurred_at >= ?"
            params.append(float(since))
        with self._read() as conn:
            total = conn.execute(f"SELECT COUNT(1) FROM audit_entries{where}", params).fetchone()[0]
            messages = conn.execute(f"SELECT COUNT(DISTINCT message_id) FROM audit_entries{where}", params).fetchone()[0]
            by_type = {
                r["event_type"]: int(r["n"])
                for r in conn.execute(f"SELECT event_type, COUNT(1) AS n FROM audit_entries{where} GROUP BY event_type", params)
            }
        return {"total": int(total or 0), "audited_messages": int(messages or 0), "by_type": by_type}
