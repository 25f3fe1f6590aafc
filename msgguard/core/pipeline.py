from __future__ import annotations

"""
Message send path and the moderation / compliance surface.

submit_message() is the only call a sender blocks on. It classifies, assesses,
checks consent and persists the message; audit, retention and moderation
follow-ups are issued after the message is durable and never fail the send.
Any follow-up that did fail is repaired by reconcile(), which runs before
every retention tick.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from msgguard.core.audit.dead_letter import DeadLetterStore
from msgguard.core.audit.log import AuditLog
from msgguard.core.audit.models import AuditEventType, AuditLogEntry
from msgguard.core.audit.store_sqlite import AuditSqliteStore
from msgguard.core.cache import BoundedCache
from msgguard.core.classification.classifier import Classifier
from msgguard.core.classification.models import ClassificationRecord, Participant, Participants, RiskLevel, UserRole
from msgguard.core.compliance.age import AgeResolver
from msgguard.core.compliance.engine import ComplianceEngine
from msgguard.core.compliance.models import ComplianceAssessment
from msgguard.core.config.models import PipelineConfig
from msgguard.core.config.paths import ConfigFsPaths
from msgguard.core.crypto import ContentCipher
from msgguard.core.errors import ConsentLookupFailed, MessageNotFound, ValidationError
from msgguard.core.events import EventBus, SourceSubsystem, emit
from msgguard.core.messages.models import DeliveryStatus, Message
from msgguard.core.messages.store_sqlite import MessageSqliteStore
from msgguard.core.moderation.models import ModerationAction, ModerationQueueEntry, ModerationStatus, Priority, ReportReason
from msgguard.core.moderation.queue import ModerationQueue
from msgguard.core.moderation.store_sqlite import ModerationSqliteStore
from msgguard.core.privacy.consent import ConsentResolver, categories_for
from msgguard.core.privacy.models import ConsentStatus
from msgguard.core.privacy.store import ProfileStore
from msgguard.core.retention.scheduler import RetentionScheduler
from msgguard.core.retention.store_sqlite import RetentionSqliteStore

ParticipantLike = Union[Participant, Dict[str, Any]]


@dataclass(frozen=True)
class SubmitResult:
    message_id: str
    classification: ClassificationRecord
    compliance: ComplianceAssessment
    delivery_status: DeliveryStatus
    consent: List[ConsentStatus] = field(default_factory=list)
    hold_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "classification": self.classification.summary(),
            "compliance": self.compliance.model_dump(mode="json"),
            "delivery_status": self.delivery_status.value,
            "hold_reason": self.hold_reason,
        }


def _participant(p: ParticipantLike) -> Participant:
    return p if isinstance(p, Participant) else Participant.model_validate(p)


class MessagePipeline:
    def __init__(
        self,
        *,
        cfg: PipelineConfig,
        classifier: Classifier,
        consent: ConsentResolver,
        compliance: ComplianceEngine,
        messages,
        audit: AuditLog,
        retention: RetentionScheduler,
        moderation: ModerationQueue,
        profiles=None,
        event_bus: Optional[EventBus] = None,
        logger=None,
        ops=None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.classifier = classifier
        self.consent = consent
        self.compliance = compliance
        self.messages = messages
        self.audit = audit
        self.retention = retention
        self.moderation = moderation
        self.profiles = profiles
        self.event_bus = event_bus
        self.logger = logger
        self.ops = ops
        self.clock = clock
        if self.retention.pre_tick is None:
            self.retention.pre_tick = self.reconcile
        # age invalidation must run before consent is recomputed
        if profiles is not None and hasattr(profiles, "add_change_listener"):
            profiles.add_change_listener(self.compliance.on_store_change)
            profiles.add_change_listener(self.consent.on_store_change)
        elif event_bus is not None:
            self.compliance.attach(event_bus)
            self.consent.attach(event_bus)

    # ---- send path ----
    def submit_message(
        self,
        content: str,
        sender: ParticipantLike,
        recipients: Sequence[ParticipantLike],
        *,
        trace_id: Optional[str] = None,
    ) -> SubmitResult:
        content = "" if content is None else str(content)
        if len(content) > int(self.cfg.classifier.max_content_chars):
            raise ValidationError("Message is too long.", max_chars=self.cfg.classifier.max_content_chars)
        try:
            participants = Participants(sender=_participant(sender), recipients=[_participant(r) for r in recipients])
        except Exception as e:  # noqa: BLE001
            raise ValidationError("Invalid sender or recipients.", detail=str(e)[:300]) from e
        if not participants.recipients:
            raise ValidationError("At least one recipient is required.")
        trace_id = trace_id or uuid.uuid4().hex

        classification = self.classifier.classify(content, participants)
        assessment = self.compliance.assess(content, participants, classification)
        statuses, hold_reason = self._check_consent(participants, classification)
        delivery = DeliveryStatus.HELD if hold_reason else DeliveryStatus.DELIVERED

        now = float(self.clock())
        message = Message(
            author_id=participants.sender.user_id,
            recipient_ids=[p.user_id for p in participants.recipients],
            content=content,
            created_at=now,
        )
        # the only write the sender waits on; failure propagates
        self.messages.create(message, classification, delivery_status=delivery)

        self._follow_up("audit", message.id, lambda: self._audit_submission(message, participants, classification, assessment, statuses, hold_reason))
        self._follow_up("retention", message.id, lambda: self.retention.schedule(message.id, classification, now))
        if classification.moderation_required:
            self._follow_up("moderation", message.id, lambda: self.moderation.enqueue(message.id, classification, created_at=now))

        emit(
            self.event_bus,
            "message.submitted",
            SourceSubsystem.pipeline,
            {"message_id": message.id, "risk_level": classification.risk_level.value, "delivery_status": delivery.value},
            trace_id=trace_id,
        )
        if hold_reason and self.logger:
            self.logger.info(f"Message {message.id} held ({hold_reason}).")
        return SubmitResult(
            message_id=message.id,
            classification=classification,
            compliance=assessment,
            delivery_status=delivery,
            consent=statuses,
            hold_reason=hold_reason,
        )

    def _check_consent(self, participants: Participants, classification: ClassificationRecord) -> Tuple[List[ConsentStatus], Optional[str]]:
        cats = categories_for(classification)
        statuses: List[ConsentStatus] = []
        reason: Optional[str] = None
        for p in participants.everyone():
            if p.role != UserRole.STUDENT:
                continue
            try:
                st = self.consent.resolve(p.user_id, cats)
            except ConsentLookupFailed as e:
                if self.logger:
                    self.logger.warning(f"Consent lookup failed for {p.user_id}; holding message: {e.context.get('detail', '')}")
                reason = "consent_lookup_failed"
                continue
            statuses.append(st)
            if st.consent_required and reason is None:
                reason = "consent_required"
        return statuses, reason

    def _audit_submission(
        self,
        message: Message,
        participants: Participants,
        classification: ClassificationRecord,
        assessment: ComplianceAssessment,
        statuses: List[ConsentStatus],
        hold_reason: Optional[str],
    ) -> None:
        now = message.created_at
        self.audit.record(message.id, AuditEventType.CLASSIFIED, self._classified_payload(message.author_id, classification, assessment), occurred_at=now)
        if assessment.disclosure_logging_required:
            students = [p.user_id for p in participants.everyone() if p.role == UserRole.STUDENT]
            payload = {
                "discloser_id": message.author_id,
                "disclosed_to": list(message.recipient_ids),
                "purpose": "direct_communication",
                "content_category": classification.content_category.value,
            }
            if not students:
                self.audit.record(message.id, AuditEventType.DISCLOSURE, payload, occurred_at=now)
            for sid in students:
                self.audit.record(message.id, AuditEventType.DISCLOSURE, payload, dedup_key=f"subject:{sid}", subject_id=sid, occurred_at=now)
        if hold_reason:
            missing = sorted({c.value for st in statuses for c in st.missing_categories})
            self.audit.record(
                message.id,
                AuditEventType.CONSENT_HOLD,
                {"reason": hold_reason, "missing_categories": missing, "subjects": [st.user_id for st in statuses if st.consent_required]},
                occurred_at=now,
            )

    @staticmethod
    def _classified_payload(author_id: str, classification: ClassificationRecord, assessment: Optional[ComplianceAssessment]) -> Dict[str, Any]:
        out: Dict[str, Any] = {"author_id": author_id, "classification": classification.summary()}
        if assessment is not None:
            out["compliance"] = assessment.model_dump(mode="json")
        return out

    def _follow_up(self, what: str, message_id: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except Exception as e:  # noqa: BLE001
            if self.logger:
                self.logger.error(f"{what} follow-up failed for message {message_id} (will reconcile): {e}")

    # ---- repair ----
    def reconcile(self, *, since: Optional[float] = None, limit: int = 5000) -> Dict[str, int]:
        """
        Backfill retention entries, moderation entries and CLASSIFIED audit
        events for recent messages whose follow-up writes failed.
        """
        now = float(self.clock())
        if since is None:
            since = now - float(self.cfg.app.reconcile_window_hours) * 3600.0
        # entries younger than a flush interval may still be queued
        settle = now - 2.0 * float(self.cfg.audit.flush_interval_seconds)
        recent = self.messages.list_since(since, limit=limit)
        ids = [m.id for m in recent]
        out = {"checked": len(recent), "retention": 0, "moderation": 0, "audit": 0}
        if not ids:
            return out

        have_retention = self.retention.store.existing(ids)
        have_moderation = self.moderation.store.existing(ids)
        have_audit = self.audit.store.messages_with(AuditEventType.CLASSIFIED, ids)
        for m in recent:
            try:
                c = m.classification_record()
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Stored classification unreadable for {m.id}: {e}")
                continue
            try:
                if m.id not in have_retention:
                    self.retention.schedule(m.id, c, m.created_at)
                    out["retention"] += 1
                if c.moderation_required and m.id not in have_moderation:
                    self.moderation.enqueue(m.id, c, created_at=m.created_at)
                    out["moderation"] += 1
                if m.id not in have_audit and m.created_at <= settle:
                    self.audit.record(m.id, AuditEventType.CLASSIFIED, self._classified_payload(m.author_id, c, None), occurred_at=m.created_at)
                    out["audit"] += 1
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Reconcile failed for message {m.id}: {e}")
        if self.logger and (out["retention"] or out["moderation"] or out["audit"]):
            self.logger.warning(f"Reconciled follow-ups: {out}")
        return out

    # ---- moderation surface ----
    def list_queue(
        self,
        *,
        priority: Optional[Priority] = None,
        status: Optional[ModerationStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ModerationQueueEntry]:
        return self.moderation.list_entries(priority=priority, status=status, limit=limit, offset=offset)

    def moderate(
        self,
        message_id: str,
        action: ModerationAction,
        moderator_id: str,
        *,
        notes: Optional[str] = None,
        expected_version: Optional[int] = None,
        reassign_to: Optional[str] = None,
    ) -> ModerationQueueEntry:
        return self.moderation.moderate(
            message_id,
            action,
            moderator_id,
            notes=notes,
            expected_version=expected_version,
            reassign_to=reassign_to,
        )

    def report_message(
        self,
        message_id: str,
        *,
        reporter_id: str,
        reason: ReportReason,
        description: str = "",
        priority: Optional[Priority] = None,
    ) -> ModerationQueueEntry:
        if self.messages.get(message_id) is None:
            raise MessageNotFound(message_id=message_id)
        _report, entry = self.moderation.report_message(
            message_id, reporter_id=reporter_id, reason=reason, description=description, priority=priority
        )
        return entry

    def has_new_data_since(self, ts: float) -> bool:
        return self.moderation.has_new_data_since(ts)

    def moderation_stats(self) -> Dict[str, int]:
        return self.moderation.counts(self.clock())

    def moderation_changes(self, since: float, *, limit: int = 100) -> List[ModerationQueueEntry]:
        return self.moderation.changed_since(since, limit=limit)

    # ---- compliance / retention surface ----
    def audit_trail(self, message_id: str) -> List[AuditLogEntry]:
        return self.audit.audit_trail(message_id)

    def disclosures(
        self,
        *,
        subject_id: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 20,
    ) -> List[AuditLogEntry]:
        return self.audit.disclosures(subject_id=subject_id, since=since, until=until, limit=limit)

    def update_retention_period(self, message_id: str, *, days: int, reason: str, actor_id: str = ""):
        return self.retention.update_retention_period(message_id, days=days, reason=reason, actor_id=actor_id)

    def retention_stats(self) -> Dict[str, Any]:
        return self.retention.stats(self.clock())

    def compliance_stats(self) -> Dict[str, Any]:
        now = float(self.clock())
        msg = self.messages.stats(now=now)
        audit = self.audit.store.counts()
        mod = self.moderation.counts(now)
        by_type = audit.get("by_type") or {}
        risk = {r.value: int((msg.get("risk_level_breakdown") or {}).get(r.value, 0)) for r in RiskLevel}
        return {
            "total_messages": msg["total_messages"],
            "educational_records": msg["educational_records"],
            "encrypted_messages": msg["encrypted_messages"],
            "held_messages": msg["held_messages"],
            "moderated_messages": sum(v for k, v in mod.items() if k in ("pending", "in_review", "escalated", "awaiting_resolution", "resolved")),
            "audited_messages": audit["audited_messages"],
            "ferpa_disclosures": int(by_type.get(AuditEventType.DISCLOSURE.value, 0)),
            "consent_holds": int(by_type.get(AuditEventType.CONSENT_HOLD.value, 0)),
            "messages_today": msg["messages_today"],
            "active_users": msg["active_users"],
            "risk_level_breakdown": risk,
        }

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "caches": {
                "classifier": self.classifier.cache_stats().to_dict(),
                "consent": self.consent.cache.stats().to_dict(),
                "ages": self.compliance.ages.cache.stats().to_dict(),
                "assessments": self.compliance.cache.stats().to_dict(),
            },
            "audit": self.audit.stats(),
            "retention_processing": self.retention.is_processing,
            "lexicon_version": self.classifier.lexicon_version,
        }
        if self.event_bus is not None:
            out["events"] = self.event_bus.get_stats()
        return out

    # ---- lifecycle ----
    def start(self) -> None:
        self.audit.start()
        if self.cfg.retention.enabled:
            self.retention.start()

    def stop(self) -> None:
        self.retention.stop()
        self.audit.stop()
        if self.event_bus is not None:
            self.event_bus.shutdown()


def build_pipeline(
    cfg: PipelineConfig,
    *,
    fs: Optional[ConfigFsPaths] = None,
    logger=None,
    ops=None,
    clock: Callable[[], float] = time.time,
    start_background: bool = True,
) -> MessagePipeline:
    """
    Wire the bundled sqlite stores and components from configuration.
    """
    fs = fs or ConfigFsPaths(".")
    db_path = fs.resolve(cfg.app.db_path)
    bus = EventBus(cfg=cfg.app.events, logger=logger)
    cipher = ContentCipher.from_key_file(fs.resolve(cfg.app.content_key_path))

    profiles = ProfileStore(db_path=db_path, event_bus=bus, logger=logger)
    messages = MessageSqliteStore(db_path=db_path, cipher=cipher)
    audit = AuditLog(
        store=AuditSqliteStore(db_path=db_path),
        dead_letter=DeadLetterStore(path=fs.resolve(cfg.audit.dead_letter_path), head_path=fs.resolve(cfg.audit.dead_letter_head_path)),
        cfg=cfg.audit,
        ops=ops,
        event_bus=bus,
        logger=logger,
        autostart=False,
    )
    ages = AgeResolver(
        store=profiles,
        cache=BoundedCache(max_entries=int(cfg.compliance.age_cache_max_entries), name="ages"),
        clock=clock,
        logger=logger,
    )
    pipeline = MessagePipeline(
        cfg=cfg,
        classifier=Classifier(cfg.classifier, logger=logger),
        consent=ConsentResolver(store=profiles, ages=ages, cfg=cfg.consent, logger=logger),
        compliance=ComplianceEngine(ages=ages, cfg=cfg.compliance, logger=logger),
        messages=messages,
        audit=audit,
        retention=RetentionScheduler(
            store=RetentionSqliteStore(db_path=db_path),
            messages=messages,
            audit=audit,
            cfg=cfg.retention,
            ops=ops,
            event_bus=bus,
            logger=logger,
            clock=clock,
        ),
        moderation=ModerationQueue(store=ModerationSqliteStore(db_path=db_path), audit=audit, cfg=cfg.moderation, event_bus=bus, logger=logger, clock=clock),
        profiles=profiles,
        event_bus=bus,
        logger=logger,
        ops=ops,
        clock=clock,
    )
    if start_background:
        pipeline.start()
    else:
        audit.start()
    return pipeline
