from __future__ import annotations

import time

import pytest

from msgguard.core.cache import BoundedCache
from msgguard.core.classification.classifier import Classifier
from msgguard.core.classification.models import (
    ContentCategory,
    EncryptionLevel,
    Participant,
    Participants,
    RiskLevel,
    UserRole,
)
from msgguard.core.config.models import ClassifierConfigFile
from msgguard.core.errors import ConfigError


def _pp(sender_role: UserRole, *recipient_roles: UserRole) -> Participants:
    return Participants(
        sender=Participant(user_id="s1", role=sender_role),
        recipients=[Participant(user_id=f"r{i}", role=r) for i, r in enumerate(recipient_roles)],
    )


def test_staff_grade_to_student_is_educational_record():
    c = Classifier()
    rec = c.classify("Your grade for the math assignment is 85/100", _pp(UserRole.TEACHER, UserRole.STUDENT))
    assert rec.content_category == ContentCategory.ACADEMIC
    assert rec.is_educational_record is True
    assert rec.encryption_level == EncryptionLevel.RECORD
    assert rec.audit_required is True


def test_bullying_between_students_requires_moderation():
    c = Classifier()
    rec = c.classify("I am being bullied and harassed", _pp(UserRole.STUDENT, UserRole.STUDENT))
    assert rec.risk_level == RiskLevel.HIGH
    assert rec.moderation_required is True
    assert {"bullied", "harassed"} <= set(rec.flagged_keywords)
    assert rec.encryption_level == EncryptionLevel.ENHANCED


def test_grade_from_student_is_not_an_educational_record():
    c = Classifier()
    rec = c.classify("my grade on the quiz was 9/10", _pp(UserRole.STUDENT, UserRole.STUDENT))
    assert rec.is_educational_record is False
    assert rec.content_category == ContentCategory.ACADEMIC


def test_educational_record_never_standard_encryption():
    c = Classifier()
    for text in ["grades are posted", "you scored 72%", "report card attached", "marks: 14/20"]:
        rec = c.classify(text, _pp(UserRole.TEACHER, UserRole.PARENT))
        if rec.is_educational_record:
            assert rec.encryption_level != EncryptionLevel.STANDARD


def test_plain_message_is_low_risk_and_unaudited():
    rec = Classifier().classify("See you at lunch", _pp(UserRole.STUDENT, UserRole.STUDENT))
    assert rec.content_category == ContentCategory.GENERAL
    assert rec.risk_level == RiskLevel.LOW
    assert rec.audit_required is False
    assert rec.moderation_required is False
    assert rec.flagged_keywords == frozenset()


def test_ambiguous_terms_fail_closed():
    c = Classifier()
    rec = c.classify("that test will hurt", _pp(UserRole.STUDENT, UserRole.STUDENT))
    assert rec.ambiguous is True
    assert rec.risk_level == RiskLevel.MEDIUM
    assert rec.audit_required is True
    assert "hurt" in rec.flagged_keywords

    rec2 = c.classify("he threatened me and I am scared", _pp(UserRole.STUDENT, UserRole.STUDENT))
    assert rec2.risk_level == RiskLevel.CRITICAL
    assert rec2.moderation_required is True


def test_classification_is_deterministic_and_cache_hit_is_faster():
    c = Classifier()
    pp = _pp(UserRole.TEACHER, UserRole.STUDENT, UserRole.PARENT)
    text = "Your grade for the science essay is 18/20. " + "The rubric covered structure and sources. " * 400

    t0 = time.perf_counter()
    first = c.classify(text, pp)
    miss = time.perf_counter() - t0

    hits = []
    for _ in range(5):
        t0 = time.perf_counter()
        again = c.classify(text, pp)
        hits.append(time.perf_counter() - t0)
        assert again == first

    assert min(hits) < miss
    st = c.cache_stats()
    assert st.hits == 5 and st.misses == 1

    c.cache.clear()
    assert c.classify(text, pp) == first


def test_cache_key_ignores_user_ids_and_whitespace():
    c = Classifier()
    a = Participants(sender=Participant(user_id="t1", role=UserRole.TEACHER), recipients=[Participant(user_id="s1", role=UserRole.STUDENT)])
    b = Participants(sender=Participant(user_id="t2", role=UserRole.TEACHER), recipients=[Participant(user_id="s9", role=UserRole.STUDENT)])
    assert c.cache_key("Homework  due\nFriday", a) == c.cache_key("homework due friday", b)


def test_cache_is_bounded():
    c = Classifier(cache=BoundedCache(max_entries=3, name="classifier"))
    pp = _pp(UserRole.STUDENT, UserRole.STUDENT)
    for i in range(10):
        c.classify(f"message number {i}", pp)
    st = c.cache_stats()
    assert st.size == 3
    assert st.evictions == 7


def test_lexicon_version_is_stamped_and_reload_clears_cache():
    cfg = ClassifierConfigFile(lexicon_version="v1")
    c = Classifier(cfg)
    pp = _pp(UserRole.STUDENT, UserRole.STUDENT)
    assert c.classify("you loser", pp).lexicon_version == "v1"
    assert c.classify("you loser", pp).risk_level == RiskLevel.MEDIUM

    risk = dict(cfg.risk_lexicons)
    risk[RiskLevel.HIGH] = list(risk[RiskLevel.HIGH]) + ["loser"]
    c.reload(cfg.model_copy(update={"lexicon_version": "v2", "risk_lexicons": risk}))
    rec = c.classify("you loser", pp)
    assert rec.lexicon_version == "v2"
    assert rec.risk_level == RiskLevel.HIGH


def test_invalid_lexicon_is_a_config_error():
    with pytest.raises(ConfigError):
        Classifier(ClassifierConfigFile(grade_terms=["!!!"]))
