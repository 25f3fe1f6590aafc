from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from msgguard.core.classification.models import RiskLevel


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)

    def bump(self) -> "Priority":
        return _PRIORITY_ORDER[min(self.rank + 1, len(_PRIORITY_ORDER) - 1)]

    @classmethod
    def from_risk(cls, risk: RiskLevel) -> "Priority":
        return cls(RiskLevel(risk).value)


_PRIORITY_ORDER: List[Priority] = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]


class ModerationStatus(str, Enum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    BLOCKED = "BLOCKED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class ModerationAction(str, Enum):
    CLAIM = "CLAIM"
    APPROVE = "APPROVE"
    BLOCK = "BLOCK"
    ESCALATE = "ESCALATE"
    RESOLVE = "RESOLVE"


class EntrySource(str, Enum):
    CLASSIFIER = "CLASSIFIER"
    USER_REPORT = "USER_REPORT"


class ReportReason(str, Enum):
    INAPPROPRIATE = "INAPPROPRIATE"
    BULLYING = "BULLYING"
    HARASSMENT = "HARASSMENT"
    SPAM = "SPAM"
    SAFETY_CONCERN = "SAFETY_CONCERN"
    PRIVACY_VIOLATION = "PRIVACY_VIOLATION"
    OTHER = "OTHER"


class ModerationQueueEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message_id: str
    priority: Priority
    status: ModerationStatus = ModerationStatus.PENDING
    flagged_keywords: List[str] = Field(default_factory=list)
    assigned_moderator_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    decided_at: Optional[float] = None
    resolved_at: Optional[float] = None
    resolution_notes: Optional[str] = None
    version: int = 1
    source: EntrySource = EntrySource.CLASSIFIER
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ModerationTransition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    entry_id: str
    message_id: str
    action: ModerationAction
    from_status: ModerationStatus
    to_status: ModerationStatus
    from_priority: Priority
    to_priority: Priority
    moderator_id: str
    notes: Optional[str] = None
    version: int
    occurred_at: float


class UserReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    report_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message_id: str = Field(min_length=1, max_length=64)
    reporter_id: str = Field(min_length=1, max_length=64)
    reason: ReportReason
    description: str = Field(default="", max_length=2000)
    priority: Priority = Priority.MEDIUM
    created_at: float = Field(default_factory=time.time)
