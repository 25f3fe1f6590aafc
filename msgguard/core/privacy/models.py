from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from msgguard.core.classification.models import UserRole


class DataCategory(str, Enum):
    """
    Data categories a message can touch. Keep these stable: they are keys in
    stored consent grants and in consent.json.
    """

    COMMUNICATION = "COMMUNICATION"
    EDUCATIONAL_RECORD = "EDUCATIONAL_RECORD"
    SAFEGUARDING = "SAFEGUARDING"


class LegalBasis(str, Enum):
    CONSENT = "CONSENT"
    LEGITIMATE_INTEREST = "LEGITIMATE_INTEREST"
    CONTRACT = "CONTRACT"
    LEGAL_OBLIGATION = "LEGAL_OBLIGATION"


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)
    role: UserRole
    display_name: str = Field(default="", max_length=120)
    birthdate: Optional[str] = None  # YYYY-MM-DD
    enrolled: bool = True
    updated_at: float = Field(default_factory=time.time)

    @field_validator("birthdate")
    @classmethod
    def _iso_date(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        v = str(v).strip()
        time.strptime(v, "%Y-%m-%d")
        return v


class ConsentGrant(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grant_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = Field(min_length=1, max_length=64)
    data_category: DataCategory
    granted: bool
    recorded_at: float = Field(default_factory=time.time)
    granted_by: str = Field(default="", max_length=64)
    evidence: str = Field(default="", max_length=500)


class ConsentStatus(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    data_categories: List[DataCategory]
    legal_basis: LegalBasis
    consent_required: bool
    missing_categories: List[DataCategory] = Field(default_factory=list)
