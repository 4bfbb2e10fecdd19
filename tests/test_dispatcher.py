"""End-to-end dispatcher runs over the in-memory feed, config, and store."""

import asyncio

import pytest

from orderbell.common.config import DispatchSettings
from orderbell.services.dispatch.config_source import MemoryConfigSource, NotificationConfig
from orderbell.services.dispatch.feed import ADDED, MODIFIED, MemoryChangeFeed
from orderbell.services.dispatch.service import NotificationDispatcher
from orderbell.services.dispatch.store import MemoryOrderStore
from orderbell.services.dispatch.triggers import cancellation_trigger, new_order_trigger

from conftest import VALID_CONFIG, RecordingNotifier, pending_order


async def settle(*dispatchers, rounds: int = 20) -> None:
    """Let feed and config tasks run, then wait for dispatches to finish."""

    for _ in range(rounds):
        await asyncio.sleep(0)
    for dispatcher in dispatchers:
        await dispatcher.drain()


def make_dispatcher(store, feed, config_source, notifier):
    return NotificationDispatcher(
        store,
        feed,
        config_source,
        notifier,
        triggers=(new_order_trigger(), cancellation_trigger()),
    )


def test_duplicate_added_and_modified_events_send_once():
    """ORD-001: an `added` and a duplicate `modified` event, one notification."""

    store = MemoryOrderStore(latency=0.001)
    feed = MemoryChangeFeed()
    notifier = RecordingNotifier(delay=0.01)
    dispatcher = make_dispatcher(store, feed, MemoryConfigSource(VALID_CONFIG), notifier)

    async def run():
        async with dispatcher:
            await settle(dispatcher)
            snapshot = store.put("ORD-001", pending_order("A-1"))
            feed.publish("ORD-001", snapshot, ADDED)
            feed.publish("ORD-001", snapshot, MODIFIED)
            await settle(dispatcher)

    asyncio.run(run())

    assert len(notifier.calls) == 1
    assert notifier.calls[0][1] == "shop@x.com"
    assert "newOrderEmailSentAt" in store.get("ORD-001")["notifications"]
    assert dispatcher.status()["known_sent"] == {"new_order": 1, "cancellation": 0}


def test_multiple_instances_share_only_the_store():
    store = MemoryOrderStore(latency=0.001)
    feed = MemoryChangeFeed()
    config_source = MemoryConfigSource(VALID_CONFIG)
    notifiers = [RecordingNotifier(delay=0.005) for _ in range(3)]
    dispatchers = [make_dispatcher(store, feed, config_source, n) for n in notifiers]

    async def run():
        for dispatcher in dispatchers:
            await dispatcher.start()
        await settle(*dispatchers)
        for order_no in range(5):
            order_id = f"ORD-1{order_no}"
            snapshot = store.put(order_id, pending_order(str(order_no)))
            feed.publish(order_id, snapshot, ADDED)
            feed.publish(order_id, snapshot, MODIFIED)
        await settle(*dispatchers)
        for dispatcher in dispatchers:
            await dispatcher.stop()

    asyncio.run(run())

    assert sum(len(n.calls) for n in notifiers) == 5
    sent_orders = sorted(payload.data["orderNo"] for n in notifiers for payload, _ in n.calls)
    assert sent_orders == ["0", "1", "2", "3", "4"]


def test_both_triggers_fire_for_an_order_that_is_cancelled():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(store, feed, MemoryConfigSource(VALID_CONFIG), notifier)

    async def run():
        async with dispatcher:
            await settle(dispatcher)
            feed.publish("ORD-020", store.put("ORD-020", pending_order()), ADDED)
            await settle(dispatcher)
            feed.publish("ORD-020", store.put("ORD-020", pending_order(status="cancelled")), MODIFIED)
            await settle(dispatcher)

    asyncio.run(run())

    assert [payload.action for payload, _ in notifier.calls] == ["order-notification", "order-cancellation"]


def test_config_changes_gate_dispatch_live():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    config_source = MemoryConfigSource()
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(store, feed, config_source, notifier)

    async def run():
        async with dispatcher:
            await settle(dispatcher)
            feed.publish("ORD-030", store.put("ORD-030", pending_order()), ADDED)
            await settle(dispatcher)
            assert notifier.calls == []
            assert store.get("ORD-030")["notifications"] == {}

            config_source.set(NotificationConfig(enabled=True, destination=" owner@shop.example "))
            await settle(dispatcher)
            assert dispatcher.status()["notifications_available"] is True
            feed.publish("ORD-030", store.get("ORD-030"), MODIFIED)
            await settle(dispatcher)

    asyncio.run(run())

    assert len(notifier.calls) == 1
    assert notifier.calls[0][1] == "owner@shop.example"


def test_resubscribe_replays_history_without_resending():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    config_source = MemoryConfigSource(VALID_CONFIG)
    first_notifier = RecordingNotifier()
    second_notifier = RecordingNotifier()

    async def run():
        async with make_dispatcher(store, feed, config_source, first_notifier) as first:
            await settle(first)
            feed.publish("ORD-040", store.put("ORD-040", pending_order()), ADDED)
            await settle(first)
        # A fresh instance gets the replay of every pending order.
        async with make_dispatcher(store, feed, config_source, second_notifier) as second:
            await settle(second)

    asyncio.run(run())

    assert len(first_notifier.calls) == 1
    assert second_notifier.calls == []


def test_stop_cancels_subscriptions():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(store, feed, MemoryConfigSource(VALID_CONFIG), notifier)

    async def run():
        await dispatcher.start()
        await settle(dispatcher)
        assert dispatcher.running
        await dispatcher.stop()
        assert not dispatcher.running
        feed.publish("ORD-050", store.put("ORD-050", pending_order()), ADDED)
        await settle(dispatcher)

    asyncio.run(run())

    assert notifier.calls == []
    assert dispatcher.session.in_flight == set()


def test_stop_cancels_dispatches_past_the_grace_period():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    notifier = RecordingNotifier(delay=5)
    dispatcher = NotificationDispatcher(
        store,
        feed,
        MemoryConfigSource(VALID_CONFIG),
        notifier,
        triggers=(new_order_trigger(),),
        shutdown_grace_seconds=0.01,
    )

    async def run():
        await dispatcher.start()
        await settle(dispatcher)
        feed.publish("ORD-060", store.put("ORD-060", pending_order()), ADDED)
        for _ in range(20):
            await asyncio.sleep(0)
        await dispatcher.stop()

    asyncio.run(run())

    # The lease stays behind and becomes reclaimable after the TTL.
    assert len(notifier.calls) == 1
    assert "newOrderEmailReservedAt" in store.get("ORD-060")["notifications"]
    assert "newOrderEmailSentAt" not in store.get("ORD-060")["notifications"]


def test_from_settings_applies_protocol_settings():
    config = DispatchSettings(
        lease_ttl_seconds=60,
        failure_cooldown_seconds=10,
        known_sent_capacity=5,
        merchant_name="Sweets",
        new_order_max_age_seconds=900,
    )
    dispatcher = NotificationDispatcher.from_settings(
        config,
        store=MemoryOrderStore(),
        feed=MemoryChangeFeed(),
        config_source=MemoryConfigSource(),
        notifier=RecordingNotifier(),
    )

    controller = dispatcher.controllers["new_order"]
    assert controller.policy.lease_ttl.total_seconds() == 60
    assert controller.policy.failure_cooldown.total_seconds() == 10
    assert controller.render_context.merchant_name == "Sweets"
    assert controller.trigger.max_age.total_seconds() == 900
    assert dispatcher.session.known_sent["cancellation"].capacity == 5


class SlowConfigSource:
    """Yields its first value only after a delay, like a cold Redis read."""

    def __init__(self, config, delay: float) -> None:
        self.config = config
        self.delay = delay

    async def watch(self):
        await asyncio.sleep(self.delay)
        yield self.config
        await asyncio.Event().wait()


class BrokenConfigSource:
    async def watch(self):
        raise ConnectionError("redis unreachable")
        yield


def test_waiting_orders_are_dispatched_after_a_slow_config_load():
    store = MemoryOrderStore()
    feed = MemoryChangeFeed()
    feed.publish("ORD-S", store.put("ORD-S", pending_order()), ADDED)
    notifier = RecordingNotifier()
    dispatcher = make_dispatcher(store, feed, SlowConfigSource(VALID_CONFIG, delay=0.05), notifier)

    async def run():
        async with dispatcher:
            assert dispatcher.session.config.available
            await settle(dispatcher)

    asyncio.run(run())

    assert len(notifier.calls) == 1
    assert "newOrderEmailSentAt" in store.get("ORD-S")["notifications"]


def test_start_fails_when_the_config_source_fails_before_loading():
    dispatcher = make_dispatcher(MemoryOrderStore(), MemoryChangeFeed(), BrokenConfigSource(), RecordingNotifier())

    with pytest.raises(ConnectionError):
        asyncio.run(dispatcher.start())

    assert not dispatcher.running
