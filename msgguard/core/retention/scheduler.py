from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, Optional

from msgguard.core.audit.models import AuditEventType
from msgguard.core.classification.models import ClassificationRecord
from msgguard.core.config.models import RetentionConfigFile
from msgguard.core.errors import RetentionActionFailed, RetentionEntryNotFound, ValidationError
from msgguard.core.events import EventSeverity, SourceSubsystem, emit
from msgguard.core.retention.models import RetentionAction, RetentionPolicy, RetentionScheduleEntry

DAY = 86400.0


class RetentionScheduler:
    """
    Periodic expiry of messages per retention policy.

    - single-flight: a tick that finds another tick running returns at once
    - resumable: every action checks the message state before applying, and
      processed_at is only ever set once
    - per-entry failures never abort the tick; after max_attempts the entry is
      flagged for manual review and skipped from then on
    - cancellable between entries (stop() / cancel())
    """

    def __init__(
        self,
        *,
        store,
        messages,
        audit=None,
        cfg: Optional[RetentionConfigFile] = None,
        ops=None,
        event_bus=None,
        logger=None,
        clock: Callable[[], float] = time.time,
        pre_tick: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.messages = messages
        self.audit = audit
        self.cfg = cfg or RetentionConfigFile()
        self.ops = ops
        self.event_bus = event_bus
        self.logger = logger
        self.clock = clock
        self.pre_tick = pre_tick
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_summary: Dict[str, Any] = {}

    # ---- policy ----
    def resolve_policy(self, classification: ClassificationRecord) -> RetentionPolicy:
        for p in self.cfg.policies:
            if p.match.matches(classification):
                return p
        # config validation guarantees a trailing catch-all
        return self.cfg.policies[-1]

    def schedule(self, message_id: str, classification: ClassificationRecord, created_at: float) -> RetentionScheduleEntry:
        """
        Idempotent: a second call for the same message leaves the first entry.
        """
        p = self.resolve_policy(classification)
        entry = RetentionScheduleEntry(
            message_id=message_id,
            policy_id=p.policy_id,
            expires_at=float(created_at) + p.days * DAY,
            action=p.action,
            is_educational_record=bool(classification.is_educational_record),
            created_at=float(created_at),
        )
        self.store.create(entry, policy_version=self.cfg.policy_version)
        return entry

    # ---- ticks ----
    @property
    def is_processing(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        """
        Ask the in-flight tick to stop after the current entry.
        """
        self._cancel.set()

    def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
        if not self._run_lock.acquire(blocking=False):
            return {"ok": False, "skipped": True, "reason": "already_running"}
        try:
            return self._tick(now)
        finally:
            self._cancel.clear()
            self._run_lock.release()

    def _tick(self, now: Optional[float]) -> Dict[str, Any]:
        if self.pre_tick is not None:
            try:
                self.pre_tick()
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.warning(f"Retention pre-tick hook failed: {e}")
        now = float(self.clock() if now is None else now)
        due = self.store.due(now, limit=int(self.cfg.batch_limit))
        summary: Dict[str, Any] = {
            "ok": True,
            "as_of": now,
            "due": len(due),
            "processed": 0,
            "archived": 0,
            "deleted": 0,
            "already_applied": 0,
            "failed": 0,
            "flagged": 0,
            "cancelled": False,
        }
        for entry in due:
            if self._stop.is_set() or self._cancel.is_set():
                summary["cancelled"] = True
                break
            try:
                outcome = self._apply(entry, now)
            except Exception as e:  # noqa: BLE001
                summary["failed"] += 1
                if self._handle_failure(entry, e):
                    summary["flagged"] += 1
                continue
            summary["processed"] += 1
            summary[outcome] = summary.get(outcome, 0) + 1

        self._last_summary = dict(summary)
        if self.logger and (summary["due"] or summary["failed"]):
            self.logger.info(
                f"Retention tick: due={summary['due']} processed={summary['processed']} failed={summary['failed']} flagged={summary['flagged']} cancelled={summary['cancelled']}"
            )
        emit(self.event_bus, "retention.tick", SourceSubsystem.retention, summary)
        return summary

    def _apply(self, entry: RetentionScheduleEntry, now: float) -> str:
        if entry.action == RetentionAction.ARCHIVE:
            res = self.messages.archive(entry.message_id, now=now)
            event_type = AuditEventType.RETENTION_ARCHIVED
            outcome = "archived"
        else:
            res = self.messages.purge(entry.message_id, now=now)
            event_type = AuditEventType.RETENTION_DELETED
            outcome = "deleted"
        if res == "already":
            outcome = "already_applied"
        if self.audit is not None:
            self.audit.record(
                entry.message_id,
                event_type,
                {"policy_id": entry.policy_id, "action": entry.action.value, "result": res, "expires_at": entry.expires_at},
                occurred_at=now,
            )
        self.store.mark_processed(entry.message_id, now=now)
        return outcome

    def _handle_failure(self, entry: RetentionScheduleEntry, exc: Exception) -> bool:
        err = RetentionActionFailed(message_id=entry.message_id, action=entry.action.value, detail=str(exc)[:300])
        attempts, flagged = self.store.record_failure(entry.message_id, error=str(exc), max_attempts=int(self.cfg.max_attempts))
        if not flagged:
            if self.logger:
                self.logger.warning(f"Retention {entry.action.value} failed for {entry.message_id} (attempt {attempts}/{self.cfg.max_attempts}): {exc}")
            return False
        details = {"message_id": entry.message_id, "policy_id": entry.policy_id, "attempts": attempts, "error": err.to_dict()}
        if self.logger:
            self.logger.error(f"Retention entry {entry.message_id} flagged for manual review after {attempts} attempts: {exc}")
        if self.ops is not None:
            self.ops.alert("retention.flagged_for_review", details, trace_id="retention")
        if self.audit is not None:
            try:
                self.audit.record(entry.message_id, AuditEventType.RETENTION_FLAGGED, details)
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Unable to audit retention flag for {entry.message_id}: {e}")
        emit(self.event_bus, "retention.flagged", SourceSubsystem.retention, details, severity=EventSeverity.ERROR)
        return True

    # ---- background loop ----
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=float(timeout))
            self._thread = None

    def _loop(self) -> None:
        interval = float(self.cfg.interval_seconds)
        while not self._stop.wait(interval):
            try:
                self.run_once()
            except Exception as e:  # noqa: BLE001
                if self.logger:
                    self.logger.error(f"Retention tick failed: {e}")

    # ---- operator surface ----
    def update_retention_period(self, message_id: str, *, days: int, reason: str, actor_id: str = "") -> RetentionScheduleEntry:
        if not 1 <= int(days) <= 3650:
            raise ValidationError("Retention period must be between 1 and 3650 days.", days=days)
        reason = str(reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to change a retention period.")
        entry = self.store.get(message_id)
        if entry is None:
            raise RetentionEntryNotFound(message_id=message_id)
        if entry.processed_at is not None:
            raise ValidationError("Retention entry already processed.", message_id=message_id)
        expires_at = entry.created_at + int(days) * DAY
        if not self.store.update_expiry(message_id, expires_at=expires_at):
            raise ValidationError("Retention entry already processed.", message_id=message_id)
        now = float(self.clock())
        if self.audit is not None:
            self.audit.record(
                message_id,
                AuditEventType.RETENTION_PERIOD_UPDATED,
                {"old_expires_at": entry.expires_at, "new_expires_at": expires_at, "days": int(days), "reason": reason[:500], "actor_id": actor_id},
                dedup_key=f"update:{int(now * 1000)}",
                occurred_at=now,
            )
        return entry.model_copy(update={"expires_at": expires_at})

    def stats(self, now: Optional[float] = None) -> Dict[str, Any]:
        out = self.store.stats(now=float(self.clock() if now is None else now))
        out["is_processing"] = self.is_processing
        out["policy_version"] = self.cfg.policy_version
        out["last_tick"] = dict(self._last_summary)
        return out
