from __future__ import annotations

from enum import Enum
from typing import Tuple

from pydantic import BaseModel, ConfigDict


class ProtectionLevel(str, Enum):
    standard = "standard"
    enhanced = "enhanced"


class ComplianceAssessment(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    is_educational_record: bool = False
    protection_level: ProtectionLevel = ProtectionLevel.standard
    disclosure_logging_required: bool = False
    minors_involved: bool = False
    unknown_ages: Tuple[str, ...] = ()
