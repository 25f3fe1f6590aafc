from __future__ import annotations

import threading

import pytest

from msgguard.core.audit.models import AuditEventType
from msgguard.core.classification.models import ClassificationRecord, RiskLevel
from msgguard.core.errors import DuplicateReport, ModerationConflict, ModerationNotFound, ResolutionNoteRequired
from msgguard.core.events import EventBus
from msgguard.core.moderation.models import EntrySource, ModerationAction, ModerationStatus, Priority, ReportReason
from msgguard.core.moderation.queue import ModerationQueue
from msgguard.core.moderation.store_sqlite import ModerationSqliteStore

from .helpers.fakes import FakeClock, ListLogger, RecordingAudit

A = ModerationAction
T0 = 1_700_000_000.0


def _rec(risk: RiskLevel, *kw: str) -> ClassificationRecord:
    return ClassificationRecord(risk_level=risk, moderation_required=True, flagged_keywords=frozenset(kw))


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def q(db_path, clock, audit):
    return ModerationQueue(store=ModerationSqliteStore(db_path=db_path), audit=audit, clock=clock)


def test_enqueue_derives_priority_and_is_idempotent(q, audit):
    e = q.enqueue("m1", _rec(RiskLevel.HIGH, "bullied", "harassed"))
    assert e.priority == Priority.HIGH
    assert e.status == ModerationStatus.PENDING
    assert e.flagged_keywords == ["bullied", "harassed"]
    again = q.enqueue("m1", _rec(RiskLevel.CRITICAL))
    assert again.id == e.id and again.priority == Priority.HIGH
    assert len(audit.of(AuditEventType.MODERATION_QUEUED)) == 1


def test_listing_orders_by_priority_then_created_at(q):
    fixture = [
        ("low-1", RiskLevel.LOW, 10),
        ("high-2", RiskLevel.HIGH, 20),
        ("crit-2", RiskLevel.CRITICAL, 30),
        ("med-1", RiskLevel.MEDIUM, 5),
        ("high-1", RiskLevel.HIGH, 1),
        ("crit-1", RiskLevel.CRITICAL, 2),
        ("low-0", RiskLevel.LOW, 0),
    ]
    for mid, risk, offset in fixture:
        q.enqueue(mid, _rec(risk), created_at=T0 + offset)

    assert [e.message_id for e in q.list_entries()] == ["crit-1", "crit-2", "high-1", "high-2", "med-1", "low-0", "low-1"]
    assert [e.message_id for e in q.list_entries(priority=Priority.HIGH)] == ["high-1", "high-2"]
    assert [e.message_id for e in q.list_entries(limit=2, offset=1)] == ["crit-2", "high-1"]


def test_same_timestamp_keeps_insertion_order(q):
    for i in range(5):
        q.enqueue(f"m{i}", _rec(RiskLevel.HIGH), created_at=T0)
    assert [e.message_id for e in q.list_entries()] == [f"m{i}" for i in range(5)]


def test_claim_approve_resolve_flow(q, clock, audit):
    q.enqueue("m1", _rec(RiskLevel.MEDIUM))
    e = q.moderate("m1", A.CLAIM, "mod1")
    assert e.status == ModerationStatus.IN_REVIEW and e.assigned_moderator_id == "mod1" and e.version == 2
    assert q.moderate("m1", A.CLAIM, "mod1").version == 2  # re-claim is a no-op

    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.APPROVE, "mod2")

    clock.advance(10)
    e = q.moderate("m1", A.APPROVE, "mod1")
    assert e.status == ModerationStatus.APPROVED and e.decided_at == T0 + 10
    e = q.moderate("m1", A.RESOLVE, "mod1", notes="closed after review")
    assert e.status == ModerationStatus.RESOLVED
    assert e.resolution_notes == "closed after review"

    with pytest.raises(ModerationNotFound):
        q.moderate("m1", A.CLAIM, "mod1")
    assert [t.action for t in q.history("m1")] == [A.CLAIM, A.APPROVE, A.RESOLVE]
    assert [r["dedup_key"] for r in audit.of(AuditEventType.MODERATED)] == ["v2", "v3", "v4"]


def test_resolve_without_notes_records_the_decision(q):
    q.enqueue("m1", _rec(RiskLevel.LOW))
    q.enqueue("m2", _rec(RiskLevel.MEDIUM))
    q.moderate("m1", A.APPROVE, "mod1")
    q.moderate("m2", A.BLOCK, "mod1")
    assert q.moderate("m1", A.RESOLVE, "mod1").resolution_notes == "APPROVED"
    assert q.moderate("m2", A.RESOLVE, "mod1").resolution_notes == "BLOCKED"


def test_unknown_message_and_invalid_transition(q):
    with pytest.raises(ModerationNotFound):
        q.moderate("missing", A.CLAIM, "mod1")
    q.enqueue("m1", _rec(RiskLevel.MEDIUM))
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.RESOLVE, "mod1")


def test_stale_expected_version_conflicts(q):
    q.enqueue("m1", _rec(RiskLevel.MEDIUM))
    q.moderate("m1", A.CLAIM, "mod1", expected_version=1)
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.APPROVE, "mod1", expected_version=1)


def test_high_priority_decision_requires_notes(q):
    q.enqueue("m1", _rec(RiskLevel.HIGH))
    with pytest.raises(ResolutionNoteRequired):
        q.moderate("m1", A.BLOCK, "mod1")
    e = q.moderate("m1", A.BLOCK, "mod1", notes="abusive language")
    assert e.status == ModerationStatus.BLOCKED
    assert e.assigned_moderator_id == "mod1"


def test_concurrent_moderate_exactly_one_wins(q):
    for round_ in range(5):
        mid = f"m{round_}"
        q.enqueue(mid, _rec(RiskLevel.MEDIUM))
        barrier = threading.Barrier(2)
        results = []

        def act(moderator: str) -> None:
            barrier.wait()
            try:
                q.moderate(mid, A.APPROVE, moderator)
                results.append("ok")
            except ModerationConflict:
                results.append("conflict")

        threads = [threading.Thread(target=act, args=(m,)) for m in ("mod1", "mod2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(results) == ["conflict", "ok"]
        assert q.get(mid).version == 2


def test_escalation_bumps_priority_and_resets_assignment(db_path, clock, audit):
    logger = ListLogger()
    q = ModerationQueue(store=ModerationSqliteStore(db_path=db_path), audit=audit, clock=clock, logger=logger)
    q.enqueue("m1", _rec(RiskLevel.HIGH))
    q.moderate("m1", A.CLAIM, "mod1")
    e = q.moderate("m1", A.ESCALATE, "mod1", notes="needs counsellor")
    assert e.status == ModerationStatus.ESCALATED
    assert e.priority == Priority.CRITICAL
    assert e.assigned_moderator_id is None
    assert any("CRITICAL" in m for m in logger.warnings)

    # anyone may pick up an unreserved escalation
    e = q.moderate("m1", A.CLAIM, "lead1")
    assert e.status == ModerationStatus.IN_REVIEW and e.assigned_moderator_id == "lead1"
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.ESCALATE, "mod1")


def test_escalation_with_reassignment_reserves_entry(q):
    q.enqueue("m1", _rec(RiskLevel.MEDIUM))
    e = q.moderate("m1", A.ESCALATE, "mod1", reassign_to="lead1")
    assert e.assigned_moderator_id == "lead1" and e.priority == Priority.HIGH
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.CLAIM, "mod2")
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.APPROVE, "mod2", notes="x")
    assert q.moderate("m1", A.CLAIM, "lead1").assigned_moderator_id == "lead1"
    # now held by lead1
    with pytest.raises(ModerationConflict):
        q.moderate("m1", A.ESCALATE, "mod1")


def test_user_report_creates_or_raises_entry(q, audit):
    _r, e = q.report_message("m1", reporter_id="s1", reason=ReportReason.BULLYING)
    assert e.source == EntrySource.USER_REPORT
    assert e.priority == Priority.MEDIUM

    _r, e = q.report_message("m1", reporter_id="s2", reason=ReportReason.SAFETY_CONCERN, priority=Priority.CRITICAL)
    assert e.priority == Priority.CRITICAL
    assert e.version == 2

    with pytest.raises(DuplicateReport):
        q.report_message("m1", reporter_id="s1", reason=ReportReason.SPAM)

    _r, e = q.report_message("m1", reporter_id="s3", reason=ReportReason.SPAM, priority=Priority.LOW)
    assert e.priority == Priority.CRITICAL
    assert len(audit.of(AuditEventType.USER_REPORTED)) == 3
    assert q.counts()["reports_today"] == 3


def test_counts_and_change_signal(q, clock):
    q.enqueue("a", _rec(RiskLevel.HIGH))
    q.enqueue("b", _rec(RiskLevel.MEDIUM))
    q.enqueue("c", _rec(RiskLevel.CRITICAL))
    mark = clock.time()
    assert q.has_new_data_since(mark) is False

    clock.advance(5)
    q.moderate("b", A.APPROVE, "mod1")
    q.moderate("c", A.BLOCK, "mod1", notes="weapon mention")
    assert q.has_new_data_since(mark) is True
    assert sorted(e.message_id for e in q.changed_since(mark)) == ["b", "c"]

    c = q.counts()
    assert c["pending"] == 1
    assert c["high_priority"] == 1
    assert c["approved_today"] == 1
    assert c["blocked_today"] == 1
    assert c["awaiting_resolution"] == 2


def test_transitions_publish_events(db_path, clock):
    bus = EventBus()
    got = []
    try:
        bus.subscribe("moderation.*", lambda ev: got.append(ev.event_type))
        q = ModerationQueue(store=ModerationSqliteStore(db_path=db_path), event_bus=bus, clock=clock)
        q.enqueue("m1", _rec(RiskLevel.MEDIUM))
        q.moderate("m1", A.CLAIM, "mod1")
        assert bus.wait_idle(2.0)
        assert got == ["moderation.queued", "moderation.claim"]
    finally:
        bus.shutdown(0.5)
