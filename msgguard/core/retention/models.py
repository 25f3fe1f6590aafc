from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from msgguard.core.classification.models import ClassificationRecord, ContentCategory, RiskLevel


class RetentionAction(str, Enum):
    ARCHIVE = "ARCHIVE"
    DELETE = "DELETE"


class RetentionMatch(BaseModel):
    """
    All given conditions must hold; an empty match is a catch-all.
    """

    model_config = ConfigDict(extra="forbid")

    educational_record: Optional[bool] = None
    min_risk: Optional[RiskLevel] = None
    category: Optional[ContentCategory] = None

    def is_catch_all(self) -> bool:
        return self.educational_record is None and self.min_risk is None and self.category is None

    def matches(self, c: ClassificationRecord) -> bool:
        if self.educational_record is not None and bool(c.is_educational_record) != bool(self.educational_record):
            return False
        if self.min_risk is not None and c.risk_level.rank < self.min_risk.rank:
            return False
        if self.category is not None and c.content_category != self.category:
            return False
        return True


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    policy_id: str = Field(min_length=1, max_length=64)
    match: RetentionMatch = Field(default_factory=RetentionMatch)
    days: int = Field(ge=1, le=3650)
    action: RetentionAction
    description: str = ""


class RetentionScheduleEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message_id: str
    policy_id: str
    expires_at: float
    action: RetentionAction
    processed_at: Optional[float] = None
    attempts: int = 0
    last_error: str = ""
    needs_review: bool = False
    is_educational_record: bool = False
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def default_policies() -> list:
    return [
        RetentionPolicy(
            policy_id="educational_record_5y",
            match=RetentionMatch(educational_record=True),
            days=1825,
            action=RetentionAction.ARCHIVE,
            description="Educational records are archived after five years.",
        ),
        RetentionPolicy(
            policy_id="safeguarding_7y",
            match=RetentionMatch(min_risk=RiskLevel.HIGH),
            days=2555,
            action=RetentionAction.ARCHIVE,
            description="High-risk messages are kept for safeguarding review.",
        ),
        RetentionPolicy(
            policy_id="academic_1y",
            match=RetentionMatch(category=ContentCategory.ACADEMIC),
            days=365,
            action=RetentionAction.ARCHIVE,
        ),
        RetentionPolicy(policy_id="default_180d", days=180, action=RetentionAction.DELETE),
    ]
