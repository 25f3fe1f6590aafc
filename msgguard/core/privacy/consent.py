from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Tuple

from msgguard.core.cache import BoundedCache
from msgguard.core.classification.models import ClassificationRecord, RiskLevel, UserRole
from msgguard.core.compliance.age import AgeResolver
from msgguard.core.config.models import ConsentConfigFile
from msgguard.core.errors import ConsentLookupFailed
from msgguard.core.events import BaseEvent
from msgguard.core.privacy.models import ConsentStatus, DataCategory, LegalBasis

# most restrictive first; the overall basis is the most restrictive one in use
_BASIS_ORDER = (LegalBasis.CONSENT, LegalBasis.LEGITIMATE_INTEREST, LegalBasis.CONTRACT, LegalBasis.LEGAL_OBLIGATION)


def categories_for(classification: ClassificationRecord) -> List[DataCategory]:
    cats = [DataCategory.COMMUNICATION]
    if classification.is_educational_record:
        cats.append(DataCategory.EDUCATIONAL_RECORD)
    if classification.risk_level.rank >= RiskLevel.HIGH.rank:
        cats.append(DataCategory.SAFEGUARDING)
    return cats


class ConsentResolver:
    """
    Legal basis per (user, data categories).

    Explicit grants win (a revoked grant is missing consent, never a fallback
    to another basis). Without a grant: legal obligation categories, staff
    contract, then legitimate interest for enrolled adult students and
    parents. Anything else is missing. Store failures raise
    ConsentLookupFailed and are never cached.
    """

    def __init__(
        self,
        *,
        store,
        ages: AgeResolver,
        cfg: Optional[ConsentConfigFile] = None,
        cache: Optional[BoundedCache] = None,
        logger=None,
    ):
        self.store = store
        self.ages = ages
        self.cfg = cfg or ConsentConfigFile()
        self.cache: BoundedCache = cache or BoundedCache(max_entries=int(self.cfg.cache_max_entries), name="consent")
        self.logger = logger

    def cache_key(self, user_id: str, data_categories: Iterable[DataCategory]) -> Tuple[str, Tuple[str, ...], int]:
        # the day keeps an age-derived basis from outliving a birthday
        return (str(user_id), tuple(sorted({DataCategory(c).value for c in data_categories})), self.ages.today())

    def resolve(self, user_id: str, data_categories: Iterable[DataCategory]) -> ConsentStatus:
        key = self.cache_key(user_id, data_categories)
        return self.cache.get_or_compute(key, lambda: self._resolve(key[0], [DataCategory(c) for c in key[1]]))

    def _resolve(self, user_id: str, cats: List[DataCategory]) -> ConsentStatus:
        try:
            profile = self.store.get_profile(user_id)
            grants = self.store.get_consents(user_id)
            age = self._student_age(profile)
        except Exception as e:  # noqa: BLE001
            raise ConsentLookupFailed(user_id=user_id, detail=str(e)[:200]) from e

        bases: Dict[DataCategory, LegalBasis] = {}
        missing: List[DataCategory] = []
        for cat in cats:
            basis = self._basis_for(cat, profile, grants, age)
            if basis is None:
                missing.append(cat)
            else:
                bases[cat] = basis

        if missing:
            overall = LegalBasis.CONSENT
        else:
            used = set(bases.values())
            overall = next((b for b in _BASIS_ORDER if b in used), LegalBasis.CONSENT)
        return ConsentStatus(
            user_id=user_id,
            data_categories=cats,
            legal_basis=overall,
            consent_required=bool(missing),
            missing_categories=missing,
        )

    def _student_age(self, profile) -> Optional[int]:
        if profile is None or profile.role != UserRole.STUDENT or not profile.enrolled:
            return None
        return self.ages.lookup_age(profile.user_id)

    def _basis_for(self, cat: DataCategory, profile, grants, age: Optional[int]) -> Optional[LegalBasis]:
        grant = grants.get(cat)
        if grant is not None:
            return LegalBasis.CONSENT if grant.granted else None
        if cat in self.cfg.legal_obligation_categories:
            return LegalBasis.LEGAL_OBLIGATION
        if profile is None:
            return None
        if profile.role in self.cfg.staff_roles:
            return LegalBasis.CONTRACT
        if cat not in self.cfg.legitimate_interest_categories:
            return None
        if profile.role == UserRole.PARENT:
            return LegalBasis.LEGITIMATE_INTEREST
        if profile.role == UserRole.STUDENT and profile.enrolled:
            if age is not None and age >= int(self.cfg.adult_age_years):
                return LegalBasis.LEGITIMATE_INTEREST
        return None

    # ---- invalidation ----
    def invalidate(self, user_id: str) -> int:
        uid = str(user_id)
        return self.cache.invalidate_where(lambda k: k[0] == uid)

    def on_store_change(self, kind: str, user_id: str) -> None:
        """
        Synchronous hook registered on the profile store; runs after commit.
        Role, birthdate and enrollment feed the fallback bases, so profile
        updates invalidate too.
        """
        if user_id:
            self.invalidate(user_id)

    def on_change(self, ev: BaseEvent) -> None:
        self.on_store_change(ev.event_type, str(ev.payload.get("user_id") or ""))

    def attach(self, event_bus) -> None:
        event_bus.subscribe("consent.changed", self.on_change)
        event_bus.subscribe("profile.updated", self.on_change)
