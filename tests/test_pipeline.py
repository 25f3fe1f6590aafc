from __future__ import annotations

import sqlite3
import threading

import pytest

from msgguard.core.audit.models import AuditEventType
from msgguard.core.classification.models import (
    ClassificationRecord,
    ContentCategory,
    EncryptionLevel,
    Participant,
    RiskLevel,
    UserRole,
)
from msgguard.core.errors import MessageNotFound, ValidationError
from msgguard.core.events import SourceSubsystem, emit
from msgguard.core.messages.models import DeliveryStatus, Message
from msgguard.core.moderation.models import ModerationAction, ModerationStatus, Priority, ReportReason
from msgguard.core.privacy.models import DataCategory, UserProfile

from .helpers.fakes import FailingProfileStore, FailingScheduler

TEACHER = Participant(user_id="t1", role=UserRole.TEACHER)
ADULT = Participant(user_id="s1", role=UserRole.STUDENT)
ADULT2 = Participant(user_id="s2", role=UserRole.STUDENT)
MINOR = Participant(user_id="m1", role=UserRole.STUDENT)


@pytest.fixture
def people(pipeline):
    store = pipeline.profiles
    store.upsert_profile(UserProfile(user_id="t1", role=UserRole.TEACHER))
    store.upsert_profile(UserProfile(user_id="s1", role=UserRole.STUDENT, birthdate="2001-04-01"))
    store.upsert_profile(UserProfile(user_id="s2", role=UserRole.STUDENT, birthdate="2002-09-12"))
    store.upsert_profile(UserProfile(user_id="m1", role=UserRole.STUDENT, birthdate="2011-06-30"))
    pipeline.event_bus.wait_idle(2.0)
    return store


def test_grade_message_is_an_encrypted_disclosed_record(pipeline, people):
    res = pipeline.submit_message("Your grade for the math assignment is 85/100", TEACHER, [ADULT])
    c = res.classification
    assert c.content_category == ContentCategory.ACADEMIC
    assert c.is_educational_record is True
    assert c.encryption_level == EncryptionLevel.RECORD
    assert c.audit_required is True
    assert res.delivery_status == DeliveryStatus.DELIVERED
    assert res.compliance.disclosure_logging_required is True

    with sqlite3.connect(pipeline.messages.db_path) as conn:
        raw = conn.execute("SELECT content, content_sealed FROM messages WHERE id=?", (res.message_id,)).fetchone()
    assert raw[1] == 1 and "85/100" not in raw[0]
    assert pipeline.messages.get(res.message_id, include_content=True).content == "Your grade for the math assignment is 85/100"

    assert pipeline.audit.flush(5.0)
    trail = pipeline.audit_trail(res.message_id)
    assert [e.event_type for e in trail] == [AuditEventType.CLASSIFIED, AuditEventType.DISCLOSURE]
    assert trail[1].subject_id == "s1"
    assert "85/100" not in str([e.payload for e in trail])
    assert [d.message_id for d in pipeline.disclosures(subject_id="s1")] == [res.message_id]

    entry = pipeline.retention.store.get(res.message_id)
    assert entry.policy_id == "educational_record_5y"


def test_bullying_message_is_queued_for_moderation(pipeline, people):
    res = pipeline.submit_message("I am being bullied and harassed", ADULT, [ADULT2])
    c = res.classification
    assert c.risk_level == RiskLevel.HIGH
    assert c.moderation_required is True
    assert {"bullied", "harassed"} <= set(c.flagged_keywords)

    entry = pipeline.moderation.get(res.message_id)
    assert entry.priority == Priority.HIGH
    assert entry.status == ModerationStatus.PENDING
    assert pipeline.list_queue(priority=Priority.HIGH)[0].message_id == res.message_id

    assert pipeline.audit.flush(5.0)
    types = {e.event_type for e in pipeline.audit_trail(res.message_id)}
    assert {AuditEventType.CLASSIFIED, AuditEventType.MODERATION_QUEUED} <= types


def test_high_risk_always_has_matching_queue_entry(pipeline, people):
    texts = ["he has a gun", "stop harassing me", "you are a loser", "I was threatened and scared", "lunch?"]
    for text in texts:
        res = pipeline.submit_message(text, ADULT, [ADULT2])
        entry = pipeline.moderation.get(res.message_id)
        if res.classification.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            assert entry is not None
            assert entry.priority == Priority.from_risk(res.classification.risk_level)
        else:
            assert entry is None


def test_minor_without_consent_is_held(pipeline, people):
    res = pipeline.submit_message("See you in class", TEACHER, [MINOR])
    assert res.delivery_status == DeliveryStatus.HELD
    assert res.hold_reason == "consent_required"
    assert res.compliance.minors_involved is True
    assert pipeline.messages.get(res.message_id).delivery_status == DeliveryStatus.HELD

    assert pipeline.audit.flush(5.0)
    holds = [e for e in pipeline.audit_trail(res.message_id) if e.event_type == AuditEventType.CONSENT_HOLD]
    assert holds and holds[0].payload["subjects"] == ["m1"]

    people.set_consent(user_id="m1", data_category=DataCategory.COMMUNICATION, granted=True, granted_by="parent1")
    assert pipeline.event_bus.wait_idle(2.0)
    assert pipeline.submit_message("See you in class", TEACHER, [MINOR]).delivery_status == DeliveryStatus.DELIVERED


def test_revocation_holds_next_message_while_event_bus_is_stalled(pipeline, people):
    people.set_consent(user_id="m1", data_category=DataCategory.COMMUNICATION, granted=True, granted_by="parent1")
    assert pipeline.submit_message("See you in class", TEACHER, [MINOR]).delivery_status == DeliveryStatus.DELIVERED

    gate, busy = threading.Event(), threading.Event()
    pipeline.event_bus.subscribe("test.stall", lambda ev: (busy.set(), gate.wait(5.0)))
    try:
        emit(pipeline.event_bus, "test.stall", SourceSubsystem.pipeline)
        assert busy.wait(2.0)
        people.set_consent(user_id="m1", data_category=DataCategory.COMMUNICATION, granted=False)
        res = pipeline.submit_message("See you in class", TEACHER, [MINOR])
        assert res.delivery_status == DeliveryStatus.HELD
        assert res.hold_reason == "consent_required"
    finally:
        gate.set()


def test_consent_lookup_failure_holds_message(pipeline, people):
    pipeline.consent.store = FailingProfileStore()
    res = pipeline.submit_message("hello", TEACHER, [ADULT])
    assert res.delivery_status == DeliveryStatus.HELD
    assert res.hold_reason == "consent_lookup_failed"


def test_input_validation(pipeline):
    with pytest.raises(ValidationError):
        pipeline.submit_message("hi", TEACHER, [])
    with pytest.raises(ValidationError):
        pipeline.submit_message("x" * (pipeline.cfg.classifier.max_content_chars + 1), TEACHER, [ADULT])
    with pytest.raises(ValidationError):
        pipeline.submit_message("hi", {"user_id": "", "role": "TEACHER"}, [ADULT])


def test_follow_up_failure_does_not_fail_send_and_is_reconciled(pipeline, people):
    real = pipeline.retention
    pipeline.retention = FailingScheduler(real)
    res = pipeline.submit_message("hello there", ADULT, [ADULT2])
    assert pipeline.messages.get(res.message_id) is not None
    assert real.store.get(res.message_id) is None

    pipeline.retention.fail = False
    out = pipeline.reconcile()
    assert out["retention"] == 1
    assert real.store.get(res.message_id).policy_id == "default_180d"
    pipeline.retention = real


def test_reconcile_backfills_all_follow_ups(pipeline, clock):
    c = ClassificationRecord(risk_level=RiskLevel.CRITICAL, moderation_required=True, audit_required=True, encryption_level=EncryptionLevel.ENHANCED)
    m = Message(author_id="s1", recipient_ids=["s2"], content="orphan", created_at=clock.time())
    pipeline.messages.create(m, c, delivery_status=DeliveryStatus.DELIVERED)

    # too fresh for the audit backfill; the flusher may still hold it
    first = pipeline.reconcile()
    assert first["retention"] == 1 and first["moderation"] == 1 and first["audit"] == 0

    clock.advance(60)
    second = pipeline.reconcile()
    assert second == {"checked": 1, "retention": 0, "moderation": 0, "audit": 1}
    assert pipeline.audit.flush(5.0)
    assert pipeline.audit.store.exists(m.id, AuditEventType.CLASSIFIED)
    assert pipeline.moderation.get(m.id).priority == Priority.CRITICAL
    assert pipeline.reconcile() == {"checked": 1, "retention": 0, "moderation": 0, "audit": 0}


def test_moderation_surface_and_reports(pipeline, people):
    res = pipeline.submit_message("you are a loser", ADULT, [ADULT2])
    assert pipeline.moderation.get(res.message_id) is None

    entry = pipeline.report_message(res.message_id, reporter_id="s2", reason=ReportReason.BULLYING)
    assert entry.status == ModerationStatus.PENDING
    with pytest.raises(MessageNotFound):
        pipeline.report_message("nope", reporter_id="s2", reason=ReportReason.SPAM)

    entry = pipeline.moderate(res.message_id, ModerationAction.CLAIM, "mod1")
    entry = pipeline.moderate(res.message_id, ModerationAction.APPROVE, "mod1", expected_version=entry.version)
    assert entry.status == ModerationStatus.APPROVED
    stats = pipeline.moderation_stats()
    assert stats["approved_today"] == 1 and stats["reports_today"] == 1
    assert pipeline.has_new_data_since(0.0) is True


def test_compliance_and_service_stats(pipeline, people):
    pipeline.submit_message("Your grade for the math assignment is 85/100", TEACHER, [ADULT])
    pipeline.submit_message("I am being bullied and harassed", ADULT, [ADULT2])
    pipeline.submit_message("See you in class", TEACHER, [MINOR])
    assert pipeline.audit.flush(5.0)

    s = pipeline.compliance_stats()
    assert s["total_messages"] == 3
    assert s["educational_records"] == 1
    assert s["encrypted_messages"] == 2
    assert s["held_messages"] == 1
    assert s["ferpa_disclosures"] == 1
    assert s["consent_holds"] == 1
    assert s["moderated_messages"] == 1
    assert s["risk_level_breakdown"] == {"LOW": 2, "MEDIUM": 0, "HIGH": 1, "CRITICAL": 0}

    r = pipeline.retention_stats()
    assert r["total_scheduled"] == 3 and r["educational_records"] == 1

    st = pipeline.stats()
    assert set(st["caches"]) == {"classifier", "consent", "ages", "assessments"}
    assert st["audit"]["persisted_total"] >= 5
    assert st["lexicon_version"] == pipeline.cfg.classifier.lexicon_version


def test_update_retention_period_through_pipeline(pipeline, people, clock):
    res = pipeline.submit_message("lunch?", ADULT, [ADULT2])
    e = pipeline.update_retention_period(res.message_id, days=7, reason="data subject request", actor_id="admin")
    assert e.expires_at == clock.time() + 7 * 86400
    out = pipeline.retention.run_once(now=clock.time() + 8 * 86400)
    assert out["deleted"] == 1
