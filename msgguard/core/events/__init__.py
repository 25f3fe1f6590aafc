"""
In-process event bus carrying change notifications (consent, profiles) into the
pipeline and pipeline notifications (moderation, audit, retention) out of it.
"""

from msgguard.core.events.models import BaseEvent, EventSeverity, SourceSubsystem
from msgguard.core.events.bus import EventBus, EventBusConfig, OverflowPolicy

__all__ = [
    "BaseEvent",
    "EventSeverity",
    "SourceSubsystem",
    "EventBus",
    "EventBusConfig",
    "OverflowPolicy",
]


def emit(bus, event_type: str, source: SourceSubsystem, payload=None, *, severity: EventSeverity = EventSeverity.INFO, trace_id=None) -> bool:
    """
    Best-effort publish; a missing or failing bus never affects the caller.
    """
    if bus is None:
        return False
    try:
        return bool(bus.publish(BaseEvent(event_type=event_type, source_subsystem=source, severity=severity, payload=dict(payload or {}), trace_id=trace_id)))
    except Exception:  # noqa: BLE001
        return False
