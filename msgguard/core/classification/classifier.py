from __future__ import annotations

import hashlib
import threading
from typing import FrozenSet, Optional

from msgguard.core.cache import BoundedCache, CacheStats
from msgguard.core.classification.lexicon import CompiledLexicon, LexiconMatch, compile_lexicon
from msgguard.core.classification.models import (
    ClassificationRecord,
    ContentCategory,
    EncryptionLevel,
    Participants,
    RiskLevel,
    UserRole,
)
from msgguard.core.config.models import ClassifierConfigFile
from msgguard.core.errors import ClassificationAmbiguous

# tie-break when two category lexicons match equally often
CATEGORY_PRECEDENCE = (ContentCategory.ACADEMIC, ContentCategory.SUPPORT, ContentCategory.ADMINISTRATIVE)


def normalize_content(content: Optional[str], *, max_chars: int) -> str:
    text = str(content or "")[: int(max_chars)]
    return " ".join(text.lower().split())


class Classifier:
    """
    Rule-based message classifier.

    classify() is deterministic for identical (content, participant roles,
    lexicon version) and never raises for well-formed input. Results are
    memoized in an injected BoundedCache.
    """

    def __init__(self, cfg: Optional[ClassifierConfigFile] = None, *, cache: Optional[BoundedCache] = None, logger=None):
        cfg = cfg or ClassifierConfigFile()
        self.logger = logger
        self._lock = threading.Lock()
        self._apply(cfg)
        self.cache: BoundedCache = cache or BoundedCache(max_entries=int(cfg.cache_max_entries), name="classifier")

    def _apply(self, cfg: ClassifierConfigFile) -> None:
        # compile first so a bad lexicon leaves the previous one in place
        lex = compile_lexicon(cfg)
        with self._lock:
            self.cfg = cfg
            self.lexicon: CompiledLexicon = lex
            self._record_roles: FrozenSet[UserRole] = frozenset(cfg.educational_record_recipient_roles)

    @property
    def lexicon_version(self) -> str:
        return self.lexicon.version

    def reload(self, cfg: ClassifierConfigFile) -> None:
        """
        Swap in a new lexicon. Cached records of the old version are dropped.
        """
        self._apply(cfg)
        self.cache.clear()
        if self.logger:
            self.logger.info(f"Classifier lexicon reloaded (version={cfg.lexicon_version}).")

    def cache_key(self, content: Optional[str], participants: Participants) -> str:
        norm = normalize_content(content, max_chars=self.cfg.max_content_chars)
        roles = ",".join(sorted(p.role.value for p in participants.recipients))
        h = hashlib.sha256()
        for part in (norm, participants.sender.role.value, roles, self.lexicon.version):
            h.update(part.encode("utf-8"))
            h.update(b"\x1f")
        return h.hexdigest()

    def classify(self, content: Optional[str], participants: Participants) -> ClassificationRecord:
        key = self.cache_key(content, participants)
        return self.cache.get_or_compute(key, lambda: self._classify_uncached(content, participants))

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    # ---- rules ----
    def _classify_uncached(self, content: Optional[str], participants: Participants) -> ClassificationRecord:
        lex = self.lexicon
        cfg = self.cfg
        norm = normalize_content(content, max_chars=cfg.max_content_chars)
        m = lex.scan(norm)

        category = self._category(m)
        educational = self._is_educational_record(m, participants)
        if educational:
            category = ContentCategory.ACADEMIC

        flagged = set()
        for phrases in m.risk_phrases.values():
            flagged.update(phrases)
        ambiguous = False
        try:
            risk = self._risk(m)
        except ClassificationAmbiguous as e:
            ambiguous = True
            risk = e.context["resolved"]
            flagged.update(m.ambiguous_phrases)

        if educational:
            enc = EncryptionLevel.RECORD
        elif risk.rank >= RiskLevel.HIGH.rank or category == ContentCategory.SUPPORT:
            enc = EncryptionLevel.ENHANCED
        else:
            enc = EncryptionLevel.STANDARD

        return ClassificationRecord(
            content_category=category,
            risk_level=risk,
            is_educational_record=educational,
            encryption_level=enc,
            moderation_required=risk.rank >= cfg.moderation_min_risk.rank,
            audit_required=educational or risk != RiskLevel.LOW or ambiguous,
            flagged_keywords=frozenset(flagged),
            ambiguous=ambiguous,
            lexicon_version=lex.version,
        )

    @staticmethod
    def _category(m: LexiconMatch) -> ContentCategory:
        if not m.categories:
            return ContentCategory.GENERAL
        best = max(m.categories.values())
        for c in CATEGORY_PRECEDENCE:
            if m.categories.get(c, 0) == best:
                return c
        return ContentCategory.GENERAL

    def _is_educational_record(self, m: LexiconMatch, participants: Participants) -> bool:
        if participants.sender.role != UserRole.TEACHER or not m.grade_mention:
            return False
        return any(p.role in self._record_roles for p in participants.recipients)

    @staticmethod
    def _risk(m: LexiconMatch) -> RiskLevel:
        """
        Highest matched tier. Ambiguous terms make the level uncertain; that is
        signalled with ClassificationAmbiguous carrying the fail-closed level.
        """
        risk = RiskLevel.LOW
        for level in m.risk_phrases:
            if level.rank > risk.rank:
                risk = level
        if m.ambiguous_phrases:
            resolved = risk.bump() if risk != RiskLevel.LOW else RiskLevel.MEDIUM
            raise ClassificationAmbiguous(matched=risk, resolved=resolved, terms=sorted(m.ambiguous_phrases))
        return risk

