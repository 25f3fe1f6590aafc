from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from msgguard.core.redaction import content_redact


class AuditEventType(str, Enum):
    CLASSIFIED = "CLASSIFIED"
    DISCLOSURE = "DISCLOSURE"
    CONSENT_HOLD = "CONSENT_HOLD"
    MODERATION_QUEUED = "MODERATION_QUEUED"
    MODERATED = "MODERATED"
    USER_REPORTED = "USER_REPORTED"
    RETENTION_ARCHIVED = "RETENTION_ARCHIVED"
    RETENTION_DELETED = "RETENTION_DELETED"
    RETENTION_FLAGGED = "RETENTION_FLAGGED"
    RETENTION_PERIOD_UPDATED = "RETENTION_PERIOD_UPDATED"


class AuditLogEntry(BaseModel):
    """
    Append-only compliance event.

    Identity for deduplication is (message_id, event_type, dedup_key): a
    re-enqueued logical event is stored once. Payloads never carry content.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message_id: str = Field(min_length=1, max_length=64)
    event_type: AuditEventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: float = Field(default_factory=lambda: time.time())
    flushed: bool = False
    dedup_key: str = Field(default="", max_length=128)
    subject_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("payload")
    @classmethod
    def _no_content(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(v, dict):
            raise ValueError("payload must be an object")
        return content_redact(v)

    @property
    def identity(self) -> tuple:
        return (self.message_id, self.event_type.value, self.dedup_key)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
