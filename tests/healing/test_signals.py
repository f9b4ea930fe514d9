"""
Tests for the signal bus.

Tests cover:
- Delivery order and per-kind routing
- Subscriber failure isolation
- Unsubscribe (handle and by callback), including during delivery
- Async subscribers and drain()
- Statistics
"""

import asyncio

import pytest

from healing.events import SignalType
from healing.signals import SignalBus
from healing.types import ModuleStatus


class TestDelivery:
    """Test synchronous delivery semantics."""

    def test_delivers_in_registration_order(self, bus, make_event):
        received = []
        bus.subscribe(SignalType.DEGRADED, lambda e: received.append(("first", e.module_name)))
        bus.subscribe(SignalType.DEGRADED, lambda e: received.append(("second", e.module_name)))

        delivered = bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert delivered == 2
        assert received == [("first", "gateway"), ("second", "gateway")]

    def test_routes_by_kind(self, bus, make_event):
        degraded, recovered = [], []
        bus.subscribe(SignalType.DEGRADED, degraded.append)
        bus.subscribe(SignalType.RECOVERED, recovered.append)

        bus.publish(make_event(SignalType.RECOVERED, "gateway", ModuleStatus.HEALTHY))

        assert degraded == []
        assert len(recovered) == 1

    def test_publish_without_subscribers(self, bus, make_event):
        assert bus.publish(make_event(SignalType.UNHEALTHY, "gateway", ModuleStatus.UNHEALTHY)) == 0

    def test_failing_subscriber_is_isolated(self, bus, make_event):
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(SignalType.DEGRADED, broken)
        bus.subscribe(SignalType.DEGRADED, received.append)

        delivered = bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert delivered == 1
        assert len(received) == 1
        assert bus.get_stats()["errors"] == 1

    def test_late_subscriber_sees_only_later_events(self, bus, make_event):
        early, late = [], []
        bus.subscribe(SignalType.DEGRADED, early.append)
        bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        bus.subscribe(SignalType.DEGRADED, late.append)
        bus.publish(make_event(SignalType.DEGRADED, "storage", ModuleStatus.DEGRADED))

        assert [e.module_name for e in early] == ["gateway", "storage"]
        assert [e.module_name for e in late] == ["storage"]

    def test_non_callable_subscriber_rejected(self, bus):
        with pytest.raises(TypeError):
            bus.subscribe(SignalType.DEGRADED, "not callable")


class TestUnsubscribe:
    """Test removing subscribers."""

    def test_subscription_handle(self, bus, make_event):
        received = []
        subscription = bus.subscribe(SignalType.DEGRADED, received.append)

        subscription.unsubscribe()
        subscription.unsubscribe()
        bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert received == []
        assert subscription.active is False
        assert bus.get_subscriber_count(SignalType.DEGRADED) == 0

    def test_unsubscribe_by_callback(self, bus):
        def callback(event):
            pass

        bus.subscribe(SignalType.RECOVERED, callback)

        assert bus.unsubscribe(SignalType.RECOVERED, callback) is True
        assert bus.unsubscribe(SignalType.RECOVERED, callback) is False

    def test_unsubscribe_during_delivery(self, bus, make_event):
        received = []
        subscriptions = []

        def first(event):
            received.append("first")
            subscriptions[1].unsubscribe()

        subscriptions.append(bus.subscribe(SignalType.DEGRADED, first))
        subscriptions.append(bus.subscribe(SignalType.DEGRADED, lambda e: received.append("second")))

        bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert received == ["first"]

    def test_clear(self, bus):
        bus.subscribe(SignalType.DEGRADED, print)
        bus.subscribe(SignalType.ESCALATION, print)
        assert bus.get_subscriber_count() == 2

        bus.clear()
        assert bus.get_subscriber_count() == 0


class TestAsyncSubscribers:
    """Test subscribers returning awaitables."""

    @pytest.mark.asyncio
    async def test_coroutine_subscriber_runs_on_loop(self, bus, make_event):
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event.module_name)

        bus.subscribe(SignalType.DEGRADED, handler)
        bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert received == []
        await bus.drain()
        assert received == ["gateway"]
        assert bus.get_stats()["pending"] == 0

    @pytest.mark.asyncio
    async def test_failing_coroutine_counted(self, bus, make_event):
        async def handler(event):
            raise ValueError("async subscriber bug")

        bus.subscribe(SignalType.DEGRADED, handler)
        bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))
        await bus.drain()
        await asyncio.sleep(0)

        assert bus.get_stats()["errors"] == 1

    def test_coroutine_without_loop_is_dropped(self, make_event):
        bus = SignalBus()
        called = []

        async def handler(event):
            called.append(event)

        bus.subscribe(SignalType.DEGRADED, handler)
        delivered = bus.publish(make_event(SignalType.DEGRADED, "gateway", ModuleStatus.DEGRADED))

        assert delivered == 1
        assert called == []
        assert bus.get_stats()["errors"] == 1


class TestStats:
    """Test bus statistics."""

    def test_counts(self, bus, make_event):
        bus.subscribe(SignalType.DEGRADED, lambda e: None)
        bus.publish(make_event(SignalType.DEGRADED, "a", ModuleStatus.DEGRADED))
        bus.publish(make_event(SignalType.DEGRADED, "b", ModuleStatus.DEGRADED))
        bus.publish(make_event(SignalType.RECOVERED, "a", ModuleStatus.HEALTHY))

        stats = bus.get_stats()

        assert stats["published"] == 3
        assert stats["delivered"] == 2
        assert stats["by_kind"] == {"degraded": 2, "recovered": 1}
        assert stats["subscribers"] == {"degraded": 1}
