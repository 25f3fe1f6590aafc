from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from msgguard.core.audit.dead_letter import DeadLetterStore
from msgguard.core.audit.models import AuditEventType, AuditLogEntry
from msgguard.core.config.models import AuditConfigFile
from msgguard.core.errors import AuditQueueClosed, AuditWriteFailed, ValidationError
from msgguard.core.events import EventSeverity, SourceSubsystem, emit


@dataclass
class _Marker:
    done: threading.Event = field(default_factory=threading.Event)
    stop: bool = False


@dataclass
class AuditStats:
    enqueued_total: int = 0
    persisted_total: int = 0
    duplicates_total: int = 0
    batches_total: int = 0
    retries_total: int = 0
    dead_lettered_total: int = 0
    last_error: str = ""


class AuditLog:
    """
    Batched, durable, append-only audit log.

    - enqueue() is safe from many threads; it never drops: when the bounded
      queue stays full past enqueue_block_seconds the entry goes straight to
      the dead-letter file
    - exactly one flusher thread writes batches on size or age, whichever
      first; FIFO order is kept, so a message's entries keep their order
    - a failed batch is retried with exponential backoff, then dead-lettered
      and an operational alert is raised
    """

    def __init__(
        self,
        *,
        store,
        dead_letter: DeadLetterStore,
        cfg: Optional[AuditConfigFile] = None,
        ops=None,
        event_bus=None,
        logger=None,
        sleep: Optional[Callable[[float], None]] = None,
        autostart: bool = True,
    ):
        self.store = store
        self.dead_letter = dead_letter
        self.cfg = cfg or AuditConfigFile()
        self.ops = ops
        self.event_bus = event_bus
        self.logger = logger
        self._sleep = sleep or time.sleep
        self._q: "queue.Queue[Any]" = queue.Queue(maxsize=int(self.cfg.queue_max))
        self._stats = AuditStats()
        self._stats_lock = threading.Lock()
        self._stranded: List[AuditLogEntry] = []
        self._replay_lock = threading.Lock()
        self._closed = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if autostart:
            self.start()

    # ---- lifecycle ----
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name="audit-flusher", daemon=True)
        self._thread.start()

    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float = 10.0) -> None:
        """
        Stop accepting entries, drain the queue, join the flusher.
        """
        if self._thread is None:
            return
        self._closed = True
        self._stop.set()
        marker = _Marker(stop=True)
        try:
            self._q.put(marker, timeout=float(timeout))
        except queue.Full:
            if self.logger:
                self.logger.error("Audit queue full at shutdown; flusher will drain before exiting.")
        self._thread.join(timeout=float(timeout))
        self._thread = None

    # ---- producer side ----
    def enqueue(self, entry: AuditLogEntry) -> None:
        if self._closed:
            raise AuditQueueClosed(message_id=getattr(entry, "message_id", ""))
        if not isinstance(entry, AuditLogEntry):
            try:
                entry = AuditLogEntry.model_validate(entry)
            except Exception as e:  # noqa: BLE001
                raise ValidationError("Invalid audit entry.", detail=str(e)[:300]) from e
        try:
            if float(self.cfg.enqueue_block_seconds) > 0:
                self._q.put(entry, timeout=float(self.cfg.enqueue_block_seconds))
            else:
                self._q.put_nowait(entry)
        except queue.Full:
            self._dead_letter([entry], reason="queue_full", attempts=0)
            return
        with self._stats_lock:
            self._stats.enqueued_total += 1

    def record(
        self,
        message_id: str,
        event_type: AuditEventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        dedup_key: str = "",
        subject_id: Optional[str] = None,
        occurred_at: Optional[float] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            message_id=message_id,
            event_type=event_type,
            payload=dict(payload or {}),
            dedup_key=dedup_key,
            subject_id=subject_id,
            occurred_at=time.time() if occurred_at is None else float(occurred_at),
        )
        self.enqueue(entry)
        return entry

    def flush(self, timeout: float = 10.0) -> bool:
        """
        Write everything enqueued so far; True once it is durable (or dead-lettered).
        """
        if not self.running():
            return self._q.empty()
        marker = _Marker()
        try:
            self._q.put(marker, timeout=float(timeout))
        except queue.Full:
            return False
        return marker.done.wait(timeout=float(timeout))

    # ---- queries ----
    def audit_trail(self, message_id: str) -> List[AuditLogEntry]:
        return self.store.trail(message_id)

    def disclosures(
        self,
        *,
        subject_id: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 20,
    ) -> List[AuditLogEntry]:
        limit = max(1, min(int(limit), 100))
        return self.store.query(event_type=AuditEventType.DISCLOSURE, subject_id=subject_id, since=since, until=until, limit=limit)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            s = self._stats
            return {
                "queued": self._q.qsize(),
                "enqueued_total": s.enqueued_total,
                "persisted_total": s.persisted_total,
                "duplicates_total": s.duplicates_total,
                "batches_total": s.batches_total,
                "retries_total": s.retries_total,
                "dead_lettered_total": s.dead_lettered_total,
                "stranded": len(self._stranded),
                "last_error": s.last_error,
                "running": self.running(),
            }

    def replay_dead_letter(self) -> Dict[str, Any]:
        """
        Re-append dead-lettered entries. Dedup on the store makes this
        idempotent.

        The live file is claimed (moved to a private name) before it is read,
        so batches dead-lettered during the replay land in a fresh file and
        wait for the next run. A claim whose write fails stays pending and is
        retried first next time.
        """
        with self._replay_lock:
            self.dead_letter.claim()
            replayed = inserted = duplicates = 0
            chain_ok = True
            archived = ""
            for claimed in self.dead_letter.pending_claims():
                entries, ok = self.dead_letter.read_entries(claimed)
                if not ok:
                    chain_ok = False
                    if self.logger:
                        self.logger.warning(f"Dead-letter hash chain does not verify in {claimed}; replaying anyway.")
                if entries:
                    try:
                        ins, dup = self.store.append_batch(entries)
                    except Exception as e:  # noqa: BLE001
                        raise AuditWriteFailed("Dead-letter replay failed.", detail=str(e)[:300]) from e
                    replayed += len(entries)
                    inserted += ins
                    duplicates += dup
                archived = self.dead_letter.finish(claimed)
        if replayed and self.ops is not None:
            self.ops.log(trace_id="audit", event="audit.dead_letter_replayed", outcome="ok", details={"entries": replayed, "inserted": inserted, "duplicates": duplicates})
        return {"replayed": replayed, "inserted": inserted, "duplicates": duplicates, "chain_ok": chain_ok, "rotated_to": archived}

    # ---- flusher ----
    def _run(self) -> None:
        batch: List[AuditLogEntry] = []
        deadline = 0.0
        interval = float(self.cfg.flush_interval_seconds)
        size = int(self.cfg.batch_size)
        while True:
            timeout = 0.2 if not batch else max(0.0, deadline - time.monotonic())
            try:
                item = self._q.get(timeout=timeout)
            except queue.Empty:
                if batch:
                    self._write(batch)
                    batch = []
                if self._stop.is_set() and self._q.empty():
                    break
                continue
            if isinstance(item, _Marker):
                if batch:
                    self._write(batch)
                    batch = []
                item.done.set()
                if item.stop:
                    break
                continue
            if not batch:
                deadline = time.monotonic() + interval
            batch.append(item)
            if len(batch) >= size:
                self._write(batch)
                batch = []

    def _write(self, batch: List[AuditLogEntry]) -> None:
        with self._stats_lock:
            if self._stranded:
                batch = self._stranded + batch
                self._stranded = []
        attempts = 0
        while True:
            try:
                inserted, dup = self.store.append_batch(batch)
            except Exception as e:  # noqa: BLE001
                attempts += 1
                with self._stats_lock:
                    self._stats.retries_total += 1
                    self._stats.last_error = str(e)[:300]
                if attempts >= int(self.cfg.max_attempts) or self._stop.is_set():
                    self._dead_letter(batch, reason=str(e), attempts=attempts)
                    return
                delay = min(float(self.cfg.backoff_max_seconds), float(self.cfg.backoff_base_seconds) * (2 ** (attempts - 1)))
                if self.logger:
                    self.logger.warning(f"Audit batch write failed (attempt {attempts}/{self.cfg.max_attempts}, retry in {delay:.2f}s): {e}")
                self._sleep(delay)
                continue
            for e in batch:
                e.flushed = True
            with self._stats_lock:
                self._stats.persisted_total += inserted
                self._stats.duplicates_total += dup
                self._stats.batches_total += 1
            return

    def _dead_letter(self, entries: List[AuditLogEntry], *, reason: str, attempts: int) -> None:
        try:
            n = self.dead_letter.append_batch(entries, reason=reason, attempts=attempts)
        except Exception as e:  # noqa: BLE001
            # keep in memory; retried with the next batch
            with self._stats_lock:
                self._stranded.extend(entries)
            if self.logger:
                self.logger.critical(f"Dead-letter write failed; {len(entries)} audit entries held in memory: {e}")
            if self.ops is not None:
                self.ops.alert("audit.dead_letter_failed", {"entries": len(entries), "error": str(e)[:300]}, trace_id="audit")
            return
        with self._stats_lock:
            self._stats.dead_lettered_total += n
        details = {"entries": n, "attempts": attempts, "reason": str(reason)[:300], "message_ids": sorted({e.message_id for e in entries})[:50]}
        if self.logger:
            self.logger.error(f"Audit batch dead-lettered ({n} entries after {attempts} attempts): {reason}")
        if self.ops is not None:
            self.ops.alert("audit.dead_lettered", details, trace_id="audit")
        emit(self.event_bus, "audit.dead_lettered", SourceSubsystem.audit, details, severity=EventSeverity.ERROR)
