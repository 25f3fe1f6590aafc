from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from msgguard.core.audit.models import AuditEventType
from msgguard.core.classification.models import ClassificationRecord
from msgguard.core.config.models import ModerationConfigFile
from msgguard.core.errors import (
    DuplicateReport,
    ModerationConflict,
    ModerationNotFound,
    ResolutionNoteRequired,
    ValidationError,
)
from msgguard.core.events import EventSeverity, SourceSubsystem, emit
from msgguard.core.moderation.models import (
    EntrySource,
    ModerationAction,
    ModerationQueueEntry,
    ModerationStatus,
    ModerationTransition,
    Priority,
    ReportReason,
    UserReport,
)

S = ModerationStatus

# action -> statuses it may start from
ALLOWED_FROM: Dict[ModerationAction, Tuple[ModerationStatus, ...]] = {
    ModerationAction.CLAIM: (S.PENDING, S.ESCALATED, S.IN_REVIEW),
    ModerationAction.APPROVE: (S.PENDING, S.IN_REVIEW, S.ESCALATED),
    ModerationAction.BLOCK: (S.PENDING, S.IN_REVIEW, S.ESCALATED),
    ModerationAction.ESCALATE: (S.PENDING, S.IN_REVIEW),
    ModerationAction.RESOLVE: (S.APPROVED, S.BLOCKED),
}

_ACTIVE = (S.PENDING, S.IN_REVIEW, S.ESCALATED)


class ModerationQueue:
    """
    Moderation workflow.

        PENDING -> IN_REVIEW -> {APPROVED, BLOCKED} -> RESOLVED
        PENDING | IN_REVIEW -> ESCALATED -> IN_REVIEW

    APPROVE/BLOCK on a PENDING or ESCALATED entry claim it in the same
    compare-and-swap. An IN_REVIEW entry belongs to its holder; anyone else
    gets ModerationConflict. Escalation raises priority one tier and resets
    the assignment unless reassign_to names the next holder, who is then the
    only one allowed to claim it.
    """

    def __init__(
        self,
        *,
        store,
        audit=None,
        cfg: Optional[ModerationConfigFile] = None,
        event_bus=None,
        logger=None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self.cfg = cfg or ModerationConfigFile()
        self.event_bus = event_bus
        self.logger = logger
        self.clock = clock

    # ---- insertion ----
    def enqueue(self, message_id: str, classification: ClassificationRecord, *, created_at: Optional[float] = None) -> ModerationQueueEntry:
        """
        Idempotent per message.
        """
        now = float(self.clock() if created_at is None else created_at)
        entry = ModerationQueueEntry(
            message_id=message_id,
            priority=Priority.from_risk(classification.risk_level),
            flagged_keywords=sorted(classification.flagged_keywords),
            created_at=now,
            updated_at=now,
            source=EntrySource.CLASSIFIER,
        )
        stored, created = self.store.insert(entry)
        if created:
            self._audit(
                stored.message_id,
                AuditEventType.MODERATION_QUEUED,
                {"entry_id": stored.id, "priority": stored.priority.value, "source": stored.source.value, "flagged_keywords": stored.flagged_keywords},
                occurred_at=now,
            )
            emit(self.event_bus, "moderation.queued", SourceSubsystem.moderation, {"entry_id": stored.id, "message_id": message_id, "priority": stored.priority.value})
        return stored

    def report_message(
        self,
        message_id: str,
        *,
        reporter_id: str,
        reason: ReportReason,
        description: str = "",
        priority: Optional[Priority] = None,
    ) -> Tuple[UserReport, ModerationQueueEntry]:
        """
        One report per reporter per message. Creates the queue entry when the
        message has none; otherwise raises an active entry's priority to at
        least the report's.
        """
        now = float(self.clock())
        report = UserReport(
            message_id=message_id,
            reporter_id=reporter_id,
            reason=ReportReason(reason),
            description=description,
            priority=Priority(priority) if priority is not None else self.cfg.default_report_priority,
            created_at=now,
        )
        if not self.store.add_report(report):
            raise DuplicateReport(message_id=message_id, reporter_id=reporter_id)

        entry, created = self.store.insert(
            ModerationQueueEntry(
                message_id=message_id,
                priority=report.priority,
                created_at=now,
                updated_at=now,
                source=EntrySource.USER_REPORT,
            )
        )
        if not created:
            entry = self._raise_priority(entry, report.priority, now=now)
        self._audit(
            message_id,
            AuditEventType.USER_REPORTED,
            {"report_id": report.report_id, "reason": report.reason.value, "priority": report.priority.value, "entry_id": entry.id, "new_entry": created},
            dedup_key=f"reporter:{reporter_id}",
            subject_id=reporter_id,
            occurred_at=now,
        )
        emit(self.event_bus, "moderation.reported", SourceSubsystem.moderation, {"entry_id": entry.id, "message_id": message_id, "reason": report.reason.value})
        return report, entry

    def _raise_priority(self, entry: ModerationQueueEntry, priority: Priority, *, now: float) -> ModerationQueueEntry:
        for _ in range(5):
            if entry.status not in _ACTIVE or entry.priority.rank >= priority.rank:
                return entry
            if self.store.cas_update(entry, {"priority": priority, "updated_at": now}):
                return self.store.get(entry.id) or entry
            entry = self.store.get(entry.id) or entry
        # persistent contention: the report itself is stored, moderators see it
        if self.logger:
            self.logger.warning(f"Could not raise priority of moderation entry {entry.id} after a user report.")
        return entry

    # ---- transitions ----
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
        action = ModerationAction(action)
        moderator_id = str(moderator_id or "").strip()
        if not moderator_id:
            raise ValidationError("moderator_id is required.")
        notes = (notes or "").strip() or None

        entry = self.store.get_by_message(message_id)
        if entry is None or entry.status == S.RESOLVED:
            raise ModerationNotFound(message_id=message_id)
        if expected_version is not None and int(expected_version) != entry.version:
            raise ModerationConflict(message_id=message_id, expected_version=expected_version, current_version=entry.version)
        if entry.status not in ALLOWED_FROM[action]:
            raise ModerationConflict(
                "Action not allowed from the entry's current state.",
                message_id=message_id,
                action=action.value,
                status=entry.status.value,
            )

        now = float(self.clock())
        changes = self._plan(entry, action, moderator_id, notes=notes, reassign_to=reassign_to, now=now)
        if changes is None:
            # re-claim by the current holder
            return entry

        to_status = ModerationStatus(changes["status"])
        to_priority = Priority(changes.get("priority", entry.priority))
        transition = ModerationTransition(
            entry_id=entry.id,
            message_id=entry.message_id,
            action=action,
            from_status=entry.status,
            to_status=to_status,
            from_priority=entry.priority,
            to_priority=to_priority,
            moderator_id=moderator_id,
            notes=notes,
            version=entry.version + 1,
            occurred_at=now,
        )
        if not self.store.cas_update(entry, changes, transition=transition):
            raise ModerationConflict(message_id=message_id, version=entry.version)

        updated = self.store.get(entry.id)
        if updated is None:
            raise ModerationNotFound(message_id=message_id)
        self._after_transition(transition, reassign_to=reassign_to)
        return updated

    def _plan(
        self,
        entry: ModerationQueueEntry,
        action: ModerationAction,
        moderator_id: str,
        *,
        notes: Optional[str],
        reassign_to: Optional[str],
        now: float,
    ) -> Optional[Dict[str, Any]]:
        holder = entry.assigned_moderator_id

        if action == ModerationAction.CLAIM:
            if entry.status == S.IN_REVIEW:
                if holder == moderator_id:
                    return None
                raise ModerationConflict("Entry is held by another moderator.", message_id=entry.message_id)
            self._check_reserved(entry, moderator_id)
            return {"status": S.IN_REVIEW, "assigned_moderator_id": moderator_id, "updated_at": now}

        if action in (ModerationAction.APPROVE, ModerationAction.BLOCK):
            if entry.status == S.IN_REVIEW and holder != moderator_id:
                raise ModerationConflict("Entry is held by another moderator.", message_id=entry.message_id)
            if entry.status == S.ESCALATED:
                self._check_reserved(entry, moderator_id)
            if entry.priority in self.cfg.note_required_priorities and not notes:
                raise ResolutionNoteRequired(message_id=entry.message_id, priority=entry.priority.value)
            return {
                "status": S.APPROVED if action == ModerationAction.APPROVE else S.BLOCKED,
                "assigned_moderator_id": moderator_id,
                "decided_at": now,
                "resolution_notes": notes,
                "updated_at": now,
            }

        if action == ModerationAction.ESCALATE:
            if entry.status == S.IN_REVIEW and holder != moderator_id:
                raise ModerationConflict("Entry is held by another moderator.", message_id=entry.message_id)
            reassign = (reassign_to or "").strip() or None
            return {
                "status": S.ESCALATED,
                "priority": entry.priority.bump(),
                "assigned_moderator_id": reassign,
                "updated_at": now,
            }

        # RESOLVE
        resolution = entry.resolution_notes
        if notes:
            resolution = f"{resolution}\n{notes}" if resolution else notes
        # a decision closed without notes still records what was decided
        resolution = resolution or entry.status.value
        return {"status": S.RESOLVED, "resolved_at": now, "resolution_notes": resolution, "updated_at": now}

    @staticmethod
    def _check_reserved(entry: ModerationQueueEntry, moderator_id: str) -> None:
        if entry.status == S.ESCALATED and entry.assigned_moderator_id and entry.assigned_moderator_id != moderator_id:
            raise ModerationConflict("Escalated entry is reserved for another moderator.", message_id=entry.message_id)

    def _after_transition(self, t: ModerationTransition, *, reassign_to: Optional[str]) -> None:
        payload = {
            "entry_id": t.entry_id,
            "action": t.action.value,
            "from_status": t.from_status.value,
            "to_status": t.to_status.value,
            "from_priority": t.from_priority.value,
            "to_priority": t.to_priority.value,
            "moderator_id": t.moderator_id,
            "reassigned_to": reassign_to or None,
            "notes_present": bool(t.notes),
            "version": t.version,
        }
        self._audit(t.message_id, AuditEventType.MODERATED, payload, dedup_key=f"v{t.version}", occurred_at=t.occurred_at)
        severity = EventSeverity.INFO
        if t.action == ModerationAction.ESCALATE and t.to_priority == Priority.CRITICAL:
            severity = EventSeverity.CRITICAL
            if self.logger:
                self.logger.warning(f"CRITICAL moderation escalation: message {t.message_id} escalated by {t.moderator_id}")
        emit(self.event_bus, f"moderation.{t.action.value.lower()}", SourceSubsystem.moderation, payload, severity=severity)

    def _audit(self, message_id: str, event_type: AuditEventType, payload: Dict[str, Any], **kw: Any) -> None:
        if self.audit is None:
            return
        try:
            self.audit.record(message_id, event_type, payload, **kw)
        except Exception as e:  # noqa: BLE001
            # the transition is committed; the audit gap is logged, not raised
            if self.logger:
                self.logger.error(f"Unable to audit {event_type.value} for {message_id}: {e}")

    # ---- queries ----
    def list_entries(
        self,
        *,
        priority: Optional[Priority] = None,
        status: Optional[ModerationStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ModerationQueueEntry]:
        limit = max(1, min(int(limit), int(self.cfg.max_list_limit)))
        return self.store.list_entries(priority=priority, status=status, limit=limit, offset=max(0, int(offset)))

    def get(self, message_id: str) -> Optional[ModerationQueueEntry]:
        return self.store.get_by_message(message_id)

    def history(self, message_id: str) -> List[ModerationTransition]:
        entry = self.store.get_by_message(message_id)
        return self.store.history(entry.id) if entry else []

    def counts(self, now: Optional[float] = None) -> Dict[str, int]:
        return self.store.counts(now=float(self.clock() if now is None else now))

    def has_new_data_since(self, ts: float) -> bool:
        return self.store.last_change_at() > float(ts)

    def changed_since(self, ts: float, *, limit: int = 100) -> List[ModerationQueueEntry]:
        return self.store.changed_since(ts, limit=max(1, min(int(limit), int(self.cfg.max_list_limit))))
