from __future__ import annotations

import collections
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from msgguard.core.events.models import BaseEvent


class OverflowPolicy(str, Enum):
    DROP_OLDEST = "DROP_OLDEST"
    DROP_NEWEST = "DROP_NEWEST"


class EventBusConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_queue_size: int = Field(default=1000, ge=10, le=100_000)
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    shutdown_grace_seconds: float = Field(default=2.0, ge=0.1, le=60.0)
    keep_recent: int = Field(default=200, ge=10, le=10_000)


@dataclass
class _Sub:
    event_type: str
    handler: Callable[[BaseEvent], None]


@dataclass
class EventBusStats:
    published_total: int = 0
    dropped_total: int = 0
    delivered_total: int = 0
    handler_errors_total: int = 0
    queue_depth: int = 0
    per_type_published: Dict[str, int] = field(default_factory=dict)


class EventBus:
    """
    In-process event bus.

    - publish is non-blocking (drop on overflow per policy)
    - one dispatcher thread delivers events in publish order
    - handler failures are isolated and counted
    """

    def __init__(self, *, cfg: Optional[EventBusConfig] = None, logger=None):
        self.cfg = cfg or EventBusConfig()
        self.logger = logger

        self._lock = threading.Lock()
        self._cv = threading.Condition(self._lock)
        self._queue: Deque[BaseEvent] = collections.deque()
        self._subs: List[_Sub] = []
        self._running = False
        self._accepting = True
        self._busy = False
        self._stats = EventBusStats()
        self._recent: Deque[Dict[str, Any]] = collections.deque(maxlen=int(self.cfg.keep_recent))
        self._thread = threading.Thread(target=self._dispatch_loop, name="eventbus-dispatch", daemon=True)
        if self.cfg.enabled:
            self.start()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._accepting = True
        self._thread.start()

    def enabled(self) -> bool:
        return bool(self.cfg.enabled) and self._running

    def subscribe(self, event_type: str, handler: Callable[[BaseEvent], None]) -> None:
        """
        event_type supports exact match ("consent.changed"), prefix match
        ("consent.*") and wildcard ("*").
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        with self._lock:
            self._subs.append(_Sub(event_type=str(event_type), handler=handler))

    def unsubscribe(self, handler: Callable[[BaseEvent], None]) -> int:
        with self._lock:
            before = len(self._subs)
            self._subs = [s for s in self._subs if s.handler is not handler]
            return before - len(self._subs)

    def publish(self, ev: BaseEvent) -> bool:
        if not self._accepting or not self.cfg.enabled:
            return False
        with self._lock:
            if len(self._queue) >= int(self.cfg.max_queue_size):
                self._stats.dropped_total += 1
                if self.cfg.overflow_policy == OverflowPolicy.DROP_NEWEST:
                    return False
                self._queue.popleft()
            self._queue.append(ev)
            self._stats.published_total += 1
            self._stats.per_type_published[ev.event_type] = self._stats.per_type_published.get(ev.event_type, 0) + 1
            self._stats.queue_depth = len(self._queue)
            self._recent.appendleft(ev.model_dump(mode="json"))
            self._cv.notify()
            return True

    def wait_idle(self, timeout: float = 2.0) -> bool:
        """
        Block until every queued event has been handled (tests, shutdown).
        """
        deadline = time.time() + float(timeout)
        while time.time() < deadline:
            with self._lock:
                if not self._queue and not self._busy:
                    return True
            time.sleep(0.01)
        return False

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            s = self._stats
            return {
                "enabled": self.enabled(),
                "published_total": s.published_total,
                "dropped_total": s.dropped_total,
                "delivered_total": s.delivered_total,
                "handler_errors_total": s.handler_errors_total,
                "queue_depth": len(self._queue),
                "subscribers": len(self._subs),
                "per_type_published": dict(s.per_type_published),
            }

    def dump_recent(self, n: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._recent)[: max(1, int(n))]

    def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        self._accepting = False
        if grace_seconds is None:
            grace_seconds = float(self.cfg.shutdown_grace_seconds)
        self.wait_idle(timeout=float(grace_seconds))
        self._running = False
        with self._lock:
            self._cv.notify_all()
        if self._thread.is_alive():
            self._thread.join(timeout=max(0.1, float(grace_seconds)))

    # ---- internals ----
    def _dispatch_loop(self) -> None:
        while self._running:
            with self._lock:
                if not self._queue:
                    self._stats.queue_depth = 0
                    self._cv.wait(timeout=0.2)
                    continue
                ev = self._queue.popleft()
                self._stats.queue_depth = len(self._queue)
                subs = [s for s in self._subs if _match(s.event_type, ev.event_type)]
                self._busy = True
            try:
                for s in subs:
                    self._safe_handle(s.handler, ev)
            finally:
                with self._lock:
                    self._busy = False

    def _safe_handle(self, handler: Callable[[BaseEvent], None], ev: BaseEvent) -> None:
        try:
            handler(ev)
            with self._lock:
                self._stats.delivered_total += 1
        except Exception as e:  # noqa: BLE001
            with self._lock:
                self._stats.handler_errors_total += 1
            if self.logger is not None:
                self.logger.error(f"Event handler {getattr(handler, '__name__', 'handler')} failed for {ev.event_type}: {e}")


def _match(subscribed: str, event_type: str) -> bool:
    if subscribed == "*":
        return True
    if subscribed.endswith(".*"):
        return str(event_type).startswith(subscribed[:-1])
    return subscribed == event_type
