from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from msgguard.core.classification.models import UserRole
from msgguard.core.moderation.models import ModerationAction, Priority, ReportReason


class ParticipantIn(BaseModel):
    model_config = ConfigDict(extra="forbid")
    user_id: str = Field(min_length=1, max_length=64)
    role: UserRole


class SubmitMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    content: str = Field(max_length=200_000)
    sender: ParticipantIn
    recipients: List[ParticipantIn] = Field(min_length=1, max_length=500)


class SubmitMessageResponse(BaseModel):
    trace_id: str
    message_id: str
    delivery_status: str
    hold_reason: Optional[str] = None
    classification: Dict[str, Any]
    compliance: Dict[str, Any]


class ReportRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    reporter_id: str = Field(min_length=1, max_length=64)
    reason: ReportReason
    description: str = Field(default="", max_length=2000)
    priority: Optional[Priority] = None


class ModerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    action: ModerationAction
    moderator_id: str = Field(min_length=1, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=4000)
    expected_version: Optional[int] = Field(default=None, ge=1)
    reassign_to: Optional[str] = Field(default=None, min_length=1, max_length=64)


class RetentionPeriodRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    days: int
    reason: str = Field(min_length=1, max_length=500)
    actor_id: str = Field(default="", max_length=64)


class QueueEntryResponse(BaseModel):
    entry: Dict[str, Any]


class QueueListResponse(BaseModel):
    entries: List[Dict[str, Any]]
    has_more: bool = False


class ChangesResponse(BaseModel):
    as_of: float
    changed: bool
    entries: List[Dict[str, Any]]


class AuditTrailResponse(BaseModel):
    message_id: str
    entries: List[Dict[str, Any]]
