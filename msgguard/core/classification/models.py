from __future__ import annotations

from enum import Enum
from typing import FrozenSet, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class UserRole(str, Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    PARENT = "PARENT"
    ADMINISTRATOR = "ADMINISTRATOR"
    COORDINATOR = "COORDINATOR"


class ContentCategory(str, Enum):
    GENERAL = "GENERAL"
    ACADEMIC = "ACADEMIC"
    ADMINISTRATIVE = "ADMINISTRATIVE"
    SUPPORT = "SUPPORT"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def bump(self) -> "RiskLevel":
        return _RISK_ORDER[min(self.rank + 1, len(_RISK_ORDER) - 1)]

    @classmethod
    def from_rank(cls, rank: int) -> "RiskLevel":
        return _RISK_ORDER[max(0, min(int(rank), len(_RISK_ORDER) - 1))]


_RISK_ORDER: List[RiskLevel] = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class EncryptionLevel(str, Enum):
    STANDARD = "STANDARD"
    ENHANCED = "ENHANCED"
    RECORD = "RECORD"


class Participant(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str = Field(min_length=1, max_length=64)
    role: UserRole


class Participants(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    sender: Participant
    recipients: List[Participant] = Field(default_factory=list)

    @field_validator("recipients")
    @classmethod
    def _dedupe(cls, v: List[Participant]) -> List[Participant]:
        seen = set()
        out: List[Participant] = []
        for p in v:
            if p.user_id in seen:
                continue
            seen.add(p.user_id)
            out.append(p)
        return out

    def everyone(self) -> List[Participant]:
        return [self.sender] + [p for p in self.recipients if p.user_id != self.sender.user_id]


class ClassificationRecord(BaseModel):
    """
    Derived deterministically from (content, participant roles, lexicon version).
    Immutable: a recomputation after cache eviction yields an equal record.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    content_category: ContentCategory = ContentCategory.GENERAL
    risk_level: RiskLevel = RiskLevel.LOW
    is_educational_record: bool = False
    encryption_level: EncryptionLevel = EncryptionLevel.STANDARD
    moderation_required: bool = False
    audit_required: bool = False
    flagged_keywords: FrozenSet[str] = Field(default_factory=frozenset)
    ambiguous: bool = False
    lexicon_version: str = ""

    def summary(self) -> dict:
        return {
            "content_category": self.content_category.value,
            "risk_level": self.risk_level.value,
            "is_educational_record": self.is_educational_record,
            "encryption_level": self.encryption_level.value,
            "moderation_required": self.moderation_required,
            "audit_required": self.audit_required,
            "flagged_keywords": sorted(self.flagged_keywords),
            "ambiguous": self.ambiguous,
            "lexicon_version": self.lexicon_version,
        }
