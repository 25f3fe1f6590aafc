from __future__ import annotations

import threading
import time

from msgguard.core.events.bus import EventBus, EventBusConfig, OverflowPolicy
from msgguard.core.events.models import BaseEvent, SourceSubsystem

from .helpers.fakes import ListLogger


def _ev(event_type: str, **payload) -> BaseEvent:
    return BaseEvent(event_type=event_type, source_subsystem=SourceSubsystem.pipeline, payload=payload)


def test_exact_prefix_and_wildcard_subscriptions():
    bus = EventBus(cfg=EventBusConfig())
    exact, prefix, everything = [], [], []
    bus.subscribe("consent.changed", lambda ev: exact.append(ev.event_type))
    bus.subscribe("consent.*", lambda ev: prefix.append(ev.event_type))
    bus.subscribe("*", lambda ev: everything.append(ev.event_type))

    bus.publish(_ev("consent.changed"))
    bus.publish(_ev("consent.revoked"))
    bus.publish(_ev("profile.updated"))
    assert bus.wait_idle(2.0)

    assert exact == ["consent.changed"]
    assert prefix == ["consent.changed", "consent.revoked"]
    assert everything == ["consent.changed", "consent.revoked", "profile.updated"]
    bus.shutdown(0.5)


def test_events_are_delivered_in_publish_order():
    bus = EventBus(cfg=EventBusConfig())
    seen = []
    bus.subscribe("message.submitted", lambda ev: seen.append(ev.payload["n"]))
    for n in range(50):
        bus.publish(_ev("message.submitted", n=n))
    assert bus.wait_idle(2.0)
    assert seen == list(range(50))
    bus.shutdown(0.5)


def test_handler_failure_is_isolated_and_counted():
    logger = ListLogger()
    bus = EventBus(cfg=EventBusConfig(), logger=logger)
    got = []

    def boom(ev):
        raise RuntimeError("nope")

    bus.subscribe("x.y", boom)
    bus.subscribe("x.y", lambda ev: got.append(ev.event_id))
    ev = _ev("x.y")
    bus.publish(ev)
    assert bus.wait_idle(2.0)

    assert got == [ev.event_id]
    stats = bus.get_stats()
    assert stats["handler_errors_total"] == 1
    assert stats["delivered_total"] == 1
    assert logger.errors
    bus.shutdown(0.5)


def test_overflow_drop_oldest_and_drop_newest():
    gate = threading.Event()

    def blocked(ev):
        gate.wait(2.0)

    for policy in (OverflowPolicy.DROP_OLDEST, OverflowPolicy.DROP_NEWEST):
        gate.clear()
        bus = EventBus(cfg=EventBusConfig(max_queue_size=10, overflow_policy=policy))
        bus.subscribe("*", blocked)
        bus.publish(_ev("hold"))
        deadline = time.time() + 2.0
        while bus.get_stats()["queue_depth"] and time.time() < deadline:
            time.sleep(0.01)

        results = [bus.publish(_ev("fill", n=n)) for n in range(12)]
        stats = bus.get_stats()
        assert stats["dropped_total"] == 2
        assert stats["queue_depth"] == 10
        if policy == OverflowPolicy.DROP_NEWEST:
            assert results[-2:] == [False, False]
        else:
            assert all(results)
        gate.set()
        assert bus.wait_idle(2.0)
        bus.shutdown(0.5)


def test_unsubscribe_and_shutdown_stop_delivery():
    bus = EventBus(cfg=EventBusConfig())
    got = []

    def handler(ev):
        got.append(ev.event_type)

    bus.subscribe("a.b", handler)
    assert bus.unsubscribe(handler) == 1
    bus.publish(_ev("a.b"))
    assert bus.wait_idle(2.0)
    assert got == []

    bus.shutdown(0.5)
    assert bus.publish(_ev("a.b")) is False
    assert bus.enabled() is False


def test_payload_content_is_redacted():
    bus = EventBus(cfg=EventBusConfig())
    bus.publish(_ev("message.submitted", content="my grade is 40/100", message_id="m1"))
    recent = bus.dump_recent(1)[0]
    assert recent["payload"]["message_id"] == "m1"
    assert "40/100" not in str(recent["payload"])
    bus.shutdown(0.5)
