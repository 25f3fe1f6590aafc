from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from msgguard.core.classification.models import ClassificationRecord, EncryptionLevel


class DeliveryStatus(str, Enum):
    DELIVERED = "DELIVERED"
    HELD = "HELD"


class MessageState(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


class Message(BaseModel):
    """
    Immutable once created; moderation annotations live in the moderation queue.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    author_id: str = Field(min_length=1, max_length=64)
    recipient_ids: List[str] = Field(default_factory=list)
    content: str = ""
    created_at: float = Field(default_factory=time.time)


class StoredMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    author_id: str
    recipient_ids: List[str]
    content: Optional[str] = None
    created_at: float
    encryption_level: EncryptionLevel
    classification: Dict[str, Any] = Field(default_factory=dict)
    delivery_status: DeliveryStatus = DeliveryStatus.DELIVERED
    state: MessageState = MessageState.ACTIVE
    tombstoned_at: Optional[float] = None

    def classification_record(self) -> ClassificationRecord:
        return ClassificationRecord.model_validate(self.classification)
