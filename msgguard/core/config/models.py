from __future__ import annotations

import re
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from msgguard.core.classification.models import ContentCategory, RiskLevel, UserRole
from msgguard.core.events.bus import EventBusConfig
from msgguard.core.moderation.models import Priority
from msgguard.core.privacy.models import DataCategory
from msgguard.core.retention.models import RetentionPolicy, default_policies


class AppFileConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    db_path: str = "data/msgguard.sqlite"
    log_dir: str = "logs"
    content_key_path: str = "secure/content.key"
    reconcile_window_hours: float = Field(default=24.0, gt=0, le=24 * 90)
    backups: Dict[str, Any] = Field(default_factory=lambda: {"max_backups_per_file": 10})
    events: EventBusConfig = Field(default_factory=EventBusConfig)


def _default_category_lexicons() -> Dict[ContentCategory, List[str]]:
    return {
        ContentCategory.ACADEMIC: [
            "assignment",
            "homework",
            "exam",
            "test",
            "quiz",
            "grade",
            "grades",
            "score",
            "report card",
            "math",
            "science",
            "essay",
            "project",
            "curriculum",
            "lesson",
        ],
        ContentCategory.ADMINISTRATIVE: [
            "schedule",
            "meeting",
            "attendance",
            "enrollment",
            "fee",
            "fees",
            "permission slip",
            "field trip",
            "timetable",
            "registration",
        ],
        ContentCategory.SUPPORT: [
            "counselor",
            "counselling",
            "counseling",
            "wellbeing",
            "mental health",
            "anxious",
            "anxiety",
            "support",
            "struggling",
        ],
    }


def _default_risk_lexicons() -> Dict[RiskLevel, List[str]]:
    return {
        RiskLevel.CRITICAL: [
            "suicide",
            "kill myself",
            "self harm",
            "self-harm",
            "hurt myself",
            "weapon",
            "gun",
        ],
        RiskLevel.HIGH: [
            "bullied",
            "bully",
            "bullying",
            "harassed",
            "harassment",
            "harassing",
            "threatened",
            "abuse",
            "abused",
        ],
        RiskLevel.MEDIUM: [
            "stupid",
            "idiot",
            "hate you",
            "loser",
        ],
    }


class ClassifierConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    lexicon_version: str = Field(default="2024.1", min_length=1, max_length=64)
    category_lexicons: Dict[ContentCategory, List[str]] = Field(default_factory=_default_category_lexicons)
    grade_terms: List[str] = Field(default_factory=lambda: ["grade", "grades", "score", "scored", "marks", "mark", "report card", "gpa"])
    score_patterns: List[str] = Field(default_factory=lambda: [r"\b\d{1,3}\s*/\s*\d{1,3}\b", r"\b\d{1,3}(?:\.\d+)?\s*%"])
    risk_lexicons: Dict[RiskLevel, List[str]] = Field(default_factory=_default_risk_lexicons)
    ambiguous_terms: List[str] = Field(default_factory=lambda: ["fight", "hurt", "die", "dead", "scared"])
    educational_record_recipient_roles: List[UserRole] = Field(default_factory=lambda: [UserRole.STUDENT, UserRole.PARENT])
    moderation_min_risk: RiskLevel = RiskLevel.HIGH
    max_content_chars: int = Field(default=20000, ge=100, le=1_000_000)
    cache_max_entries: int = Field(default=10000, ge=1, le=1_000_000)

    @field_validator("category_lexicons")
    @classmethod
    def _no_general(cls, v: Dict[ContentCategory, List[str]]) -> Dict[ContentCategory, List[str]]:
        if ContentCategory.GENERAL in v:
            raise ValueError("GENERAL is the fallback category and cannot carry a lexicon")
        return v

    @field_validator("risk_lexicons")
    @classmethod
    def _no_low(cls, v: Dict[RiskLevel, List[str]]) -> Dict[RiskLevel, List[str]]:
        if RiskLevel.LOW in v:
            raise ValueError("LOW is the fallback risk level and cannot carry a lexicon")
        return v

    @field_validator("score_patterns")
    @classmethod
    def _compiles(cls, v: List[str]) -> List[str]:
        for p in v:
            try:
                re.compile(p)
            except re.error as e:
                raise ValueError(f"invalid score pattern {p!r}: {e}") from e
        return v

    @model_validator(mode="after")
    def _phrases_non_empty(self) -> "ClassifierConfigFile":
        phrases: List[str] = list(self.grade_terms) + list(self.ambiguous_terms)
        for xs in self.category_lexicons.values():
            phrases.extend(xs)
        for xs in self.risk_lexicons.values():
            phrases.extend(xs)
        for p in phrases:
            if not str(p or "").strip():
                raise ValueError("lexicon phrases must be non-empty")
        return self


class ConsentConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    adult_age_years: int = Field(default=18, ge=0, le=30)
    staff_roles: List[UserRole] = Field(default_factory=lambda: [UserRole.TEACHER, UserRole.ADMINISTRATOR, UserRole.COORDINATOR])
    legitimate_interest_categories: List[DataCategory] = Field(
        default_factory=lambda: [DataCategory.COMMUNICATION, DataCategory.EDUCATIONAL_RECORD]
    )
    legal_obligation_categories: List[DataCategory] = Field(default_factory=lambda: [DataCategory.SAFEGUARDING])
    cache_max_entries: int = Field(default=20000, ge=1, le=1_000_000)


class ComplianceConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    minor_age_years: int = Field(default=18, ge=1, le=30)
    age_cache_max_entries: int = Field(default=20000, ge=1, le=1_000_000)
    assessment_cache_max_entries: int = Field(default=10000, ge=1, le=1_000_000)


class AuditConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    queue_max: int = Field(default=10000, ge=1, le=1_000_000)
    batch_size: int = Field(default=100, ge=1, le=10_000)
    flush_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    enqueue_block_seconds: float = Field(default=2.0, ge=0, le=60)
    max_attempts: int = Field(default=5, ge=1, le=100)
    backoff_base_seconds: float = Field(default=0.5, ge=0, le=60)
    backoff_max_seconds: float = Field(default=30.0, ge=0, le=3600)
    dead_letter_path: str = "data/audit/dead_letter.jsonl"
    dead_letter_head_path: str = "data/audit/dead_letter.head.json"


class RetentionConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    policy_version: str = Field(default="2024.1", min_length=1, max_length=64)
    enabled: bool = True
    interval_seconds: float = Field(default=300.0, ge=1, le=86400)
    max_attempts: int = Field(default=5, ge=1, le=100)
    batch_limit: int = Field(default=500, ge=1, le=100_000)
    policies: List[RetentionPolicy] = Field(default_factory=default_policies)

    @field_validator("policies")
    @classmethod
    def _has_catch_all(cls, v: List[RetentionPolicy]) -> List[RetentionPolicy]:
        if not v or not v[-1].match.is_catch_all():
            raise ValueError("the last retention policy must be a catch-all (empty match)")
        ids = [p.policy_id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("retention policy ids must be unique")
        return v


class ModerationConfigFile(BaseModel):
    model_config = ConfigDict(extra="forbid")
    note_required_priorities: List[Priority] = Field(default_factory=lambda: [Priority.HIGH, Priority.CRITICAL])
    default_report_priority: Priority = Priority.MEDIUM
    max_list_limit: int = Field(default=500, ge=1, le=10_000)


class WebConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    bind_host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=list)
    max_request_bytes: int = Field(default=65536, ge=1024, le=10_000_000)


class PipelineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    app: AppFileConfig
    classifier: ClassifierConfigFile
    consent: ConsentConfigFile
    compliance: ComplianceConfigFile
    audit: AuditConfigFile
    retention: RetentionConfigFile
    moderation: ModerationConfigFile
    web: WebConfig


CONFIG_FILES: Dict[str, type] = {
    "app.json": AppFileConfig,
    "classifier.json": ClassifierConfigFile,
    "consent.json": ConsentConfigFile,
    "compliance.json": ComplianceConfigFile,
    "audit.json": AuditConfigFile,
    "retention.json": RetentionConfigFile,
    "moderation.json": ModerationConfigFile,
    "web.json": WebConfig,
}
