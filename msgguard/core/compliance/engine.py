from __future__ import annotations

from typing import Any, List, Optional, Tuple

from msgguard.core.cache import BoundedCache
from msgguard.core.classification.models import ClassificationRecord, Participants, UserRole
from msgguard.core.compliance.age import AgeResolver
from msgguard.core.compliance.models import ComplianceAssessment, ProtectionLevel
from msgguard.core.config.models import ComplianceConfigFile
from msgguard.core.events import BaseEvent


class ComplianceEngine:
    """
    Educational-record and minor-protection rules.

    Pure derivation over the classification and cached age lookups. Only
    STUDENT participants are age-checked; every other role is an adult by
    role. An unknown student age counts as a minor.
    """

    def __init__(
        self,
        *,
        ages: AgeResolver,
        cfg: Optional[ComplianceConfigFile] = None,
        cache: Optional[BoundedCache] = None,
        logger=None,
    ):
        self.cfg = cfg or ComplianceConfigFile()
        self.ages = ages
        self.cache: BoundedCache = cache or BoundedCache(max_entries=int(self.cfg.assessment_cache_max_entries), name="assessments")
        self.logger = logger

    def assess(self, content: Optional[str], participants: Participants, classification: ClassificationRecord) -> ComplianceAssessment:
        # content is not consulted; the classification already carries what matters
        key: Tuple[Any, ...] = (
            classification,
            tuple((p.user_id, p.role.value) for p in participants.everyone()),
            self.ages.today(),
        )
        # an assessment built on a failed age lookup is returned but not cached
        assessment, _complete = self.cache.get_or_compute(
            key,
            lambda: self._assess(participants, classification),
            should_store=lambda v: v[1],
        )
        return assessment

    def _assess(self, participants: Participants, classification: ClassificationRecord) -> Tuple[ComplianceAssessment, bool]:
        minors = False
        complete = True
        unknown: List[str] = []
        for p in participants.everyone():
            if p.role != UserRole.STUDENT:
                continue
            try:
                age = self.ages.lookup_age(p.user_id)
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.warning(f"Age lookup failed for {p.user_id}; treating as a minor: {e}")
                age = None
                complete = False
            if age is None:
                unknown.append(p.user_id)
                minors = True
            elif age < int(self.cfg.minor_age_years):
                minors = True

        educational = bool(classification.is_educational_record)
        enhanced = educational or minors
        assessment = ComplianceAssessment(
            is_educational_record=educational,
            protection_level=ProtectionLevel.enhanced if enhanced else ProtectionLevel.standard,
            disclosure_logging_required=educational,
            minors_involved=minors,
            unknown_ages=tuple(unknown),
        )
        return assessment, complete

    # ---- invalidation ----
    def on_store_change(self, kind: str, user_id: str) -> None:
        """
        Synchronous hook registered on the profile store; runs after commit.
        """
        if kind != "profile.updated":
            return
        if user_id:
            self.ages.invalidate(user_id)
        self.cache.clear()

    def on_profile_updated(self, ev: BaseEvent) -> None:
        self.on_store_change("profile.updated", str(ev.payload.get("user_id") or ""))

    def attach(self, event_bus) -> None:
        event_bus.subscribe("profile.updated", self.on_profile_updated)
