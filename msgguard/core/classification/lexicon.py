from __future__ import annotations

"""
Compiled lexicon.

Phrases are normalized to token tuples and stored in a single dict keyed by the
tuple. Matching walks the content tokens once and probes n-grams up to the
longest phrase length, so cost grows with content length, not lexicon size.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Pattern, Set, Tuple

from msgguard.core.classification.models import ContentCategory, RiskLevel
from msgguard.core.config.models import ClassifierConfigFile
from msgguard.core.errors import ConfigError

_TOKEN_RE = re.compile(r"[a-z0-9']+")

# tag kinds
CATEGORY = "category"
RISK = "risk"
GRADE = "grade"
AMBIGUOUS = "ambiguous"


def tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall(str(text or "").lower())


def normalize(text: str) -> str:
    return " ".join(tokenize(text))


@dataclass(frozen=True)
class Tag:
    kind: str
    value: str = ""


@dataclass(frozen=True)
class LexiconMatch:
    categories: Dict[ContentCategory, int]
    risk_phrases: Dict[RiskLevel, FrozenSet[str]]
    grade_phrases: FrozenSet[str]
    ambiguous_phrases: FrozenSet[str]
    score_mentions: int

    @property
    def grade_mention(self) -> bool:
        return bool(self.grade_phrases) or self.score_mentions > 0


@dataclass
class CompiledLexicon:
    version: str
    index: Dict[Tuple[str, ...], FrozenSet[Tag]]
    max_phrase_tokens: int
    score_patterns: List[Pattern[str]] = field(default_factory=list)

    @classmethod
    def compile(cls, cfg: ClassifierConfigFile) -> "CompiledLexicon":
        index: Dict[Tuple[str, ...], Set[Tag]] = {}

        def add(phrase: str, tag: Tag) -> None:
            toks = tuple(tokenize(phrase))
            if not toks:
                raise ConfigError("Lexicon phrase normalizes to nothing.", phrase=phrase)
            index.setdefault(toks, set()).add(tag)

        for cat, phrases in cfg.category_lexicons.items():
            for p in phrases:
                add(p, Tag(CATEGORY, ContentCategory(cat).value))
        for risk, phrases in cfg.risk_lexicons.items():
            for p in phrases:
                add(p, Tag(RISK, RiskLevel(risk).value))
        for p in cfg.grade_terms:
            add(p, Tag(GRADE))
        for p in cfg.ambiguous_terms:
            add(p, Tag(AMBIGUOUS))

        try:
            patterns = [re.compile(p) for p in cfg.score_patterns]
        except re.error as e:
            raise ConfigError("Invalid score pattern.", detail=str(e)) from e

        frozen = {k: frozenset(v) for k, v in index.items()}
        longest = max((len(k) for k in frozen), default=1)
        return cls(version=cfg.lexicon_version, index=frozen, max_phrase_tokens=longest, score_patterns=patterns)

    def scan(self, content: str) -> LexiconMatch:
        tokens = tokenize(content)
        categories: Dict[ContentCategory, int] = {}
        risk: Dict[RiskLevel, Set[str]] = {}
        grade: Set[str] = set()
        ambiguous: Set[str] = set()

        n = len(tokens)
        for i in range(n):
            for size in range(1, min(self.max_phrase_tokens, n - i) + 1):
                key = tuple(tokens[i : i + size])
                tags = self.index.get(key)
                if not tags:
                    continue
                phrase = " ".join(key)
                for t in tags:
                    if t.kind == CATEGORY:
                        c = ContentCategory(t.value)
                        categories[c] = categories.get(c, 0) + 1
                    elif t.kind == RISK:
                        risk.setdefault(RiskLevel(t.value), set()).add(phrase)
                    elif t.kind == GRADE:
                        grade.add(phrase)
                    elif t.kind == AMBIGUOUS:
                        ambiguous.add(phrase)

        text = str(content or "")
        scores = sum(len(p.findall(text)) for p in self.score_patterns)
        return LexiconMatch(
            categories=categories,
            risk_phrases={k: frozenset(v) for k, v in risk.items()},
            grade_phrases=frozenset(grade),
            ambiguous_phrases=frozenset(ambiguous),
            score_mentions=scores,
        )


def compile_lexicon(cfg: Optional[ClassifierConfigFile]) -> CompiledLexicon:
    return CompiledLexicon.compile(cfg or ClassifierConfigFile())
