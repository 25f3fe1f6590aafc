from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from msgguard.core.classification.models import ClassificationRecord, EncryptionLevel
from msgguard.core.crypto import ContentCipher
from msgguard.core.messages.models import DeliveryStatus, Message, MessageState, StoredMessage
from msgguard.core.sqlite import SqliteStore, day_start


class MessageSqliteStore(SqliteStore):
    """
    Hot message rows, a cold archive and tombstones.

    Content is sealed with AES-GCM when the encryption level is above
    STANDARD; archived copies are always sealed. Archive and purge check the
    current state first so re-running either is a no-op.
    """

    def __init__(self, *, db_path: str, cipher: Optional[ContentCipher] = None):
        self.cipher = cipher
        super().__init__(db_path=db_path)

    def _init_db(self) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id TEXT PRIMARY KEY,
                  author_id TEXT NOT NULL,
                  recipient_ids TEXT NOT NULL,
                  content TEXT,
                  content_sealed INTEGER NOT NULL DEFAULT 0,
                  created_at REAL NOT NULL,
                  encryption_level TEXT NOT NULL,
                  risk_level TEXT NOT NULL,
                  is_educational_record INTEGER NOT NULL DEFAULT 0,
                  classification TEXT NOT NULL,
                  delivery_status TEXT NOT NULL,
                  state TEXT NOT NULL DEFAULT 'ACTIVE',
                  tombstoned_at REAL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS message_archive (
                  message_id TEXT PRIMARY KEY,
                  sealed_content TEXT,
                  classification TEXT NOT NULL,
                  archived_at REAL NOT NULL
                )
                """
            )

    def _seal(self, message_id: str, content: str) -> str:
        if self.cipher is None:
            raise RuntimeError("No content cipher configured for encrypted storage.")
        return self.cipher.seal(content, aad=message_id)

    def _open(self, message_id: str, stored: Optional[str], sealed: bool) -> Optional[str]:
        if stored is None or not sealed:
            return stored
        if self.cipher is None:
            raise RuntimeError("No content cipher configured for encrypted storage.")
        return self.cipher.open(stored, aad=message_id)

    def create(self, message: Message, classification: ClassificationRecord, *, delivery_status: DeliveryStatus) -> None:
        sealed = classification.encryption_level != EncryptionLevel.STANDARD
        body = self._seal(message.id, message.content) if sealed else message.content
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO messages(id, author_id, recipient_ids, content, content_sealed, created_at, encryption_level,
                                     risk_level, is_educational_record, classification, delivery_status, state)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'ACTIVE')
                """,
                (
                    message.id,
                    message.author_id,
                    json.dumps(list(message.recipient_ids)),
                    body,
                    1 if sealed else 0,
                    float(message.created_at),
                    classification.encryption_level.value,
                    classification.risk_level.value,
                    1 if classification.is_educational_record else 0,
                    json.dumps(classification.summary(), sort_keys=True),
                    DeliveryStatus(delivery_status).value,
                ),
            )

    def _row_to_message(self, r: Any, *, include_content: bool) -> StoredMessage:
        content = self._open(r["id"], r["content"], bool(r["content_sealed"])) if include_content else None
        return StoredMessage(
            id=r["id"],
            author_id=r["author_id"],
            recipient_ids=json.loads(r["recipient_ids"] or "[]"),
            content=content,
            created_at=float(r["created_at"]),
            encryption_level=EncryptionLevel(r["encryption_level"]),
            classification=json.loads(r["classification"] or "{}"),
            delivery_status=DeliveryStatus(r["delivery_status"]),
            state=MessageState(r["state"]),
            tombstoned_at=r["tombstoned_at"],
        )

    def get(self, message_id: str, *, include_content: bool = False) -> Optional[StoredMessage]:
        with self._read() as conn:
            r = conn.execute("SELECT * FROM messages WHERE id=?", (str(message_id),)).fetchone()
        return self._row_to_message(r, include_content=include_content) if r else None

    def get_archived_content(self, message_id: str) -> Optional[str]:
        with self._read() as conn:
            r = conn.execute("SELECT sealed_content FROM message_archive WHERE message_id=?", (str(message_id),)).fetchone()
        if not r or r["sealed_content"] is None:
            return None
        return self._open(str(message_id), r["sealed_content"], True)

    def list_since(self, since: float, *, limit: int = 1000) -> List[StoredMessage]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE created_at >= ? ORDER BY created_at ASC LIMIT ?",
                (float(since), int(limit)),
            ).fetchall()
        return [self._row_to_message(r, include_content=False) for r in rows]

    # ---- retention actions ----
    def archive(self, message_id: str, *, now: float) -> str:
        """
        Returns "archived", "already" or "missing".
        """
        with self._tx() as conn:
            r = conn.execute("SELECT * FROM messages WHERE id=?", (str(message_id),)).fetchone()
            if r is None:
                return "missing"
            if r["state"] != MessageState.ACTIVE.value:
                return "already"
            stored = r["content"]
            if stored is not None and not bool(r["content_sealed"]):
                stored = self._seal(r["id"], stored)
            conn.execute(
                "INSERT OR IGNORE INTO message_archive(message_id, sealed_content, classification, archived_at) VALUES (?, ?, ?, ?)",
                (r["id"], stored, r["classification"], float(now)),
            )
            conn.execute(
                "UPDATE messages SET content=NULL, content_sealed=0, state=?, tombstoned_at=? WHERE id=? AND state=?",
                (MessageState.ARCHIVED.value, float(now), r["id"], MessageState.ACTIVE.value),
            )
        return "archived"

    def purge(self, message_id: str, *, now: float) -> str:
        """
        Drop content (hot and cold), keep the row as a tombstone.
        Returns "deleted", "already" or "missing".
        """
        with self._tx() as conn:
            r = conn.execute("SELECT state FROM messages WHERE id=?", (str(message_id),)).fetchone()
            if r is None:
                return "missing"
            if r["state"] == MessageState.DELETED.value:
                return "already"
            conn.execute("UPDATE message_archive SET sealed_content=NULL WHERE message_id=?", (str(message_id),))
            conn.execute(
                "UPDATE messages SET content=NULL, content_sealed=0, state=?, tombstoned_at=? WHERE id=?",
                (MessageState.DELETED.value, float(now), str(message_id)),
            )
        return "deleted"

    # ---- stats ----
    def stats(self, *, now: float) -> Dict[str, Any]:
        today = day_start(now)
        with self._read() as conn:
            total = conn.execute("SELECT COUNT(1) FROM messages").fetchone()[0]
            records = conn.execute("SELECT COUNT(1) FROM messages WHERE is_educational_record=1").fetchone()[0]
            encrypted = conn.execute("SELECT COUNT(1) FROM messages WHERE encryption_level != ?", (EncryptionLevel.STANDARD.value,)).fetchone()[0]
            held = conn.execute("SELECT COUNT(1) FROM messages WHERE delivery_status=?", (DeliveryStatus.HELD.value,)).fetchone()[0]
            today_n = conn.execute("SELECT COUNT(1) FROM messages WHERE created_at >= ?", (today,)).fetchone()[0]
            active = conn.execute("SELECT COUNT(DISTINCT author_id) FROM messages WHERE created_at >= ?", (float(now) - 86400.0,)).fetchone()[0]
            risk = {r["risk_level"]: int(r["n"]) for r in conn.execute("SELECT risk_level, COUNT(1) AS n FROM messages GROUP BY risk_level")}
        return {
            "total_messages": int(total or 0),
            "educational_records": int(records or 0),
            "encrypted_messages": int(encrypted or 0),
            "held_messages": int(held or 0),
            "messages_today": int(today_n or 0),
            "active_users": int(active or 0),
            "risk_level_breakdown": risk,
        }
