from __future__ import annotations

import json
import os
import threading

import pytest

from msgguard.core.audit.dead_letter import DeadLetterStore
from msgguard.core.audit.log import AuditLog
from msgguard.core.audit.models import AuditEventType, AuditLogEntry
from msgguard.core.audit.store_sqlite import AuditSqliteStore
from msgguard.core.config.models import AuditConfigFile
from msgguard.core.errors import AuditQueueClosed, AuditWriteFailed
from msgguard.core.ops_log import OpsLogger

from .helpers.fakes import FlakyAuditStore, ListLogger


def _cfg(**kw) -> AuditConfigFile:  # noqa: ANN003
    base = {"flush_interval_seconds": 0.05, "backoff_base_seconds": 0.0, "max_attempts": 3}
    base.update(kw)
    return AuditConfigFile(**base)


def _dead_letter(tmp_path) -> DeadLetterStore:
    return DeadLetterStore(path=str(tmp_path / "dl" / "dead_letter.jsonl"), head_path=str(tmp_path / "dl" / "head.json"))


@pytest.fixture
def audit_store(tmp_path):
    return AuditSqliteStore(db_path=str(tmp_path / "audit.sqlite"))


def test_entries_are_durable_after_flush(tmp_path, audit_store):
    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg())
    try:
        log.record("m1", AuditEventType.CLASSIFIED, {"risk_level": "HIGH"})
        assert log.flush(5.0)
        trail = log.audit_trail("m1")
        assert [e.event_type for e in trail] == [AuditEventType.CLASSIFIED]
        assert trail[0].payload == {"risk_level": "HIGH"}
    finally:
        log.stop()


def test_interval_flush_without_explicit_flush(tmp_path, audit_store):
    import time

    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg(batch_size=1000))
    try:
        log.record("m1", AuditEventType.CLASSIFIED, {})
        deadline = time.time() + 3.0
        while time.time() < deadline and not audit_store.exists("m1", AuditEventType.CLASSIFIED):
            time.sleep(0.02)
        assert audit_store.exists("m1", AuditEventType.CLASSIFIED)
    finally:
        log.stop()


def test_reenqueued_logical_event_is_stored_once(tmp_path, audit_store):
    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg())
    try:
        log.record("m1", AuditEventType.DISCLOSURE, {}, dedup_key="subject:s1", subject_id="s1")
        log.record("m1", AuditEventType.DISCLOSURE, {}, dedup_key="subject:s1", subject_id="s1")
        log.record("m1", AuditEventType.DISCLOSURE, {}, dedup_key="subject:s2", subject_id="s2")
        assert log.flush(5.0)
        assert len(log.audit_trail("m1")) == 2
        assert log.stats()["duplicates_total"] == 1
    finally:
        log.stop()


def test_per_message_order_is_preserved_across_threads(tmp_path, audit_store):
    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg(batch_size=7))
    types = [AuditEventType.CLASSIFIED, AuditEventType.DISCLOSURE, AuditEventType.MODERATION_QUEUED, AuditEventType.MODERATED]

    def sender(mid: str) -> None:
        for t in types:
            log.record(mid, t, {})

    try:
        threads = [threading.Thread(target=sender, args=(f"m{i}",)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert log.flush(5.0)
        for i in range(10):
            assert [e.event_type for e in log.audit_trail(f"m{i}")] == types
    finally:
        log.stop()


def test_content_never_reaches_audit_payload():
    e = AuditLogEntry(message_id="m1", event_type=AuditEventType.CLASSIFIED, payload={"content": "my secret", "risk_level": "LOW"})
    assert "content" not in e.payload
    assert "my secret" not in json.dumps(e.payload)
    assert e.payload["risk_level"] == "LOW"


def test_transient_failure_is_retried(tmp_path, audit_store):
    flaky = FlakyAuditStore(audit_store, failures=2)
    sleeps = []
    log = AuditLog(store=flaky, dead_letter=_dead_letter(tmp_path), cfg=_cfg(backoff_base_seconds=0.5, max_attempts=5, flush_interval_seconds=2.0), sleep=sleeps.append)
    try:
        log.record("m1", AuditEventType.CLASSIFIED, {})
        assert log.flush(5.0)
        assert audit_store.exists("m1", AuditEventType.CLASSIFIED)
        assert sleeps == [0.5, 1.0]
        assert log.stats()["dead_lettered_total"] == 0
    finally:
        log.stop()


def test_repeated_failure_dead_letters_and_alerts(tmp_path, audit_store):
    flaky = FlakyAuditStore(audit_store, failures=100)
    ops = OpsLogger(path=str(tmp_path / "ops.jsonl"))
    dl = _dead_letter(tmp_path)
    logger = ListLogger()
    log = AuditLog(store=flaky, dead_letter=dl, cfg=_cfg(max_attempts=3, flush_interval_seconds=2.0), ops=ops, logger=logger, sleep=lambda _s: None)
    try:
        log.record("m1", AuditEventType.CLASSIFIED, {})
        log.record("m2", AuditEventType.CLASSIFIED, {})
        assert log.flush(5.0)
    finally:
        log.stop()

    assert flaky.calls == 3
    entries, chain_ok = dl.read_entries()
    assert chain_ok is True
    assert sorted(e.message_id for e in entries) == ["m1", "m2"]
    assert log.stats()["dead_lettered_total"] == 2
    assert any("dead-lettered" in m for m in logger.errors)
    alerts = [json.loads(line) for line in open(ops.path, encoding="utf-8")]
    assert alerts[-1]["event"] == "audit.dead_lettered"


def test_replay_dead_letter_is_idempotent(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    e = AuditLogEntry(message_id="m1", event_type=AuditEventType.CLASSIFIED, payload={})
    dl.append_batch([e], reason="db down", attempts=3)
    audit_store.append_batch([e])  # already partially landed

    log = AuditLog(store=audit_store, dead_letter=dl, cfg=_cfg(), autostart=False)
    out = log.replay_dead_letter()
    assert out["replayed"] == 1
    assert out["inserted"] == 0 and out["duplicates"] == 1
    assert out["chain_ok"] is True
    assert os.path.exists(out["rotated_to"])
    assert dl.count() == 0
    assert log.replay_dead_letter()["replayed"] == 0


class _DeadLettersDuringWrite:
    """Dead-letters `late` into dl the first time a replay batch is written."""

    def __init__(self, inner, dl, late):  # noqa: ANN001
        self.inner = inner
        self.dl = dl
        self.late = late

    def append_batch(self, entries):  # noqa: ANN001
        if self.late is not None:
            self.dl.append_batch([self.late], reason="db down", attempts=3)
            self.late = None
        return self.inner.append_batch(entries)


def test_entries_dead_lettered_during_replay_are_kept(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    dl.append_batch([AuditLogEntry(message_id="m1", event_type=AuditEventType.CLASSIFIED)], reason="db down", attempts=3)
    late = AuditLogEntry(message_id="m2", event_type=AuditEventType.CLASSIFIED)
    log = AuditLog(store=_DeadLettersDuringWrite(audit_store, dl, late), dead_letter=dl, cfg=_cfg(), autostart=False)

    out = log.replay_dead_letter()
    assert out["replayed"] == 1
    assert dl.count() == 1
    entries, chain_ok = dl.read_entries()
    assert [e.message_id for e in entries] == ["m2"]
    assert chain_ok is True

    again = log.replay_dead_letter()
    assert again["inserted"] == 1
    assert audit_store.exists("m2", AuditEventType.CLASSIFIED)
    assert dl.count() == 0


def test_failed_replay_keeps_entries_for_next_run(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    dl.append_batch([AuditLogEntry(message_id="m1", event_type=AuditEventType.CLASSIFIED)], reason="db down", attempts=3)
    log = AuditLog(store=FlakyAuditStore(audit_store, failures=1), dead_letter=dl, cfg=_cfg(), autostart=False)

    with pytest.raises(AuditWriteFailed):
        log.replay_dead_letter()
    assert dl.count() == 1

    assert log.replay_dead_letter()["inserted"] == 1
    assert dl.count() == 0


def test_replay_archives_never_overwrite_each_other(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    log = AuditLog(store=audit_store, dead_letter=dl, cfg=_cfg(), autostart=False)
    archives = []
    for mid in ("m1", "m2"):
        dl.append_batch([AuditLogEntry(message_id=mid, event_type=AuditEventType.CLASSIFIED)], reason="db down", attempts=3)
        archives.append(log.replay_dead_letter()["rotated_to"])
    assert archives[0] != archives[1]
    assert all(os.path.exists(p) for p in archives)


def test_tampered_dead_letter_chain_is_reported(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    dl.append_batch(
        [AuditLogEntry(message_id="m1", event_type=AuditEventType.CLASSIFIED), AuditLogEntry(message_id="m2", event_type=AuditEventType.CLASSIFIED)],
        reason="x",
        attempts=1,
    )
    lines = open(dl.path, encoding="utf-8").read().splitlines()
    rec = json.loads(lines[0])
    rec["reason"] = "edited"
    lines[0] = json.dumps(rec)
    with open(dl.path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    _entries, ok = dl.read_entries()
    assert ok is False


def test_full_queue_dead_letters_instead_of_dropping(tmp_path, audit_store):
    dl = _dead_letter(tmp_path)
    log = AuditLog(store=audit_store, dead_letter=dl, cfg=_cfg(queue_max=1, enqueue_block_seconds=0.0), autostart=False)
    log.record("m1", AuditEventType.CLASSIFIED, {})
    log.record("m2", AuditEventType.CLASSIFIED, {})
    entries, _ok = dl.read_entries()
    assert [e.message_id for e in entries] == ["m2"]
    log.start()
    try:
        assert log.flush(5.0)
        assert audit_store.exists("m1", AuditEventType.CLASSIFIED)
    finally:
        log.stop()


def test_enqueue_after_stop_is_rejected(tmp_path, audit_store):
    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg())
    log.record("m1", AuditEventType.CLASSIFIED, {})
    log.stop()
    assert audit_store.exists("m1", AuditEventType.CLASSIFIED)
    with pytest.raises(AuditQueueClosed):
        log.record("m2", AuditEventType.CLASSIFIED, {})


def test_disclosures_query_by_subject(tmp_path, audit_store):
    log = AuditLog(store=audit_store, dead_letter=_dead_letter(tmp_path), cfg=_cfg())
    try:
        for mid, sid in (("m1", "s1"), ("m2", "s1"), ("m3", "s2")):
            log.record(mid, AuditEventType.DISCLOSURE, {"discloser_id": "t1"}, dedup_key=f"subject:{sid}", subject_id=sid, occurred_at=100.0)
        assert log.flush(5.0)
        assert sorted(e.message_id for e in log.disclosures(subject_id="s1")) == ["m1", "m2"]
        assert len(log.disclosures(limit=1000)) == 3
        assert log.disclosures(since=200.0) == []
    finally:
        log.stop()
