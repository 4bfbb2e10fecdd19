"""Dispatcher runtime: wires config, feeds, and per-trigger controllers."""

import asyncio

from orderbell.common.config import DispatchSettings
from orderbell.common.logging import logger
from orderbell.common.metrics import feed_events_total
from orderbell.services.dispatch.config_source import ConfigSource, NotificationConfig
from orderbell.services.dispatch.controller import DispatchController, DispatchOutcome
from orderbell.services.dispatch.feed import ChangeEvent, ChangeFeed
from orderbell.services.dispatch.lease import LeasePolicy
from orderbell.services.dispatch.notifier import OutboundNotifier
from orderbell.services.dispatch.payloads import RenderContext
from orderbell.services.dispatch.session import DispatchSession
from orderbell.services.dispatch.store import OrderStore
from orderbell.services.dispatch.triggers import TriggerDescriptor, build_triggers


class NotificationDispatcher:
    """One running dispatch instance with explicit start/stop.

    Any number of these may run against the same store; they share nothing
    but the order documents.
    """

    def __init__(
        self,
        store: OrderStore,
        feed: ChangeFeed,
        config_source: ConfigSource,
        notifier: OutboundNotifier,
        triggers: tuple[TriggerDescriptor, ...],
        policy: LeasePolicy | None = None,
        render_context: RenderContext | None = None,
        known_sent_capacity: int = 100,
        shutdown_grace_seconds: float = 5.0,
        service_name: str = "notification-dispatch",
    ) -> None:
        self.feed = feed
        self.config_source = config_source
        self.notifier = notifier
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.service_name = service_name
        self._config_loaded: asyncio.Event | None = None
        self.session = DispatchSession.for_triggers([t.kind for t in triggers], known_sent_capacity)
        self.controllers = {
            trigger.kind: DispatchController(
                trigger,
                store,
                notifier,
                self.session,
                policy=policy,
                render_context=render_context,
                service_name=service_name,
            )
            for trigger in triggers
        }

    @classmethod
    def from_settings(
        cls,
        config: DispatchSettings,
        store: OrderStore,
        feed: ChangeFeed,
        config_source: ConfigSource,
        notifier: OutboundNotifier,
    ) -> "NotificationDispatcher":
        return cls(
            store,
            feed,
            config_source,
            notifier,
            triggers=build_triggers(config),
            policy=LeasePolicy.from_settings(config),
            render_context=RenderContext(merchant_name=config.merchant_name, dashboard_url=config.dashboard_url),
            known_sent_capacity=config.known_sent_capacity,
            shutdown_grace_seconds=config.shutdown_grace_seconds,
            service_name=config.service_name,
        )

    @property
    def running(self) -> bool:
        return bool(self.session.subscriptions)

    def apply_config(self, config: NotificationConfig) -> None:
        previous = self.session.config
        self.session.config = config
        if self._config_loaded is not None:
            self._config_loaded.set()
        if previous.deliverable_destination != config.deliverable_destination:
            logger.info(
                "notification_config_changed available=%s destination=%s",
                config.available,
                config.deliverable_destination,
            )

    async def _watch_config(self) -> None:
        async for config in self.config_source.watch():
            self.apply_config(config)

    async def _dispatch(self, controller: DispatchController, event: ChangeEvent) -> DispatchOutcome | None:
        try:
            return await controller.handle(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "dispatch_task_error order_id=%s trigger=%s error=%s",
                event.order_id,
                controller.trigger.kind,
                exc,
            )
            return None

    async def _consume(self, controller: DispatchController) -> None:
        trigger = controller.trigger
        async for event in self.feed.subscribe(trigger.matches, name=trigger.kind):
            feed_events_total.labels(
                service=self.service_name,
                trigger=trigger.kind,
                change_type=event.change_type,
            ).inc()
            # Each event runs in its own task so a slow send never blocks the feed.
            task = asyncio.create_task(self._dispatch(controller, event))
            self.session.in_flight.add(task)
            task.add_done_callback(self.session.in_flight.discard)

    async def start(self) -> None:
        """Load the notification config, then subscribe to one feed per trigger.

        Feed events are only consumed once the first config value is applied,
        so orders already waiting are not skipped as unconfigured.
        """

        if self.running:
            return
        self._config_loaded = asyncio.Event()
        watcher = asyncio.create_task(self._watch_config(), name="config-watch")
        self.session.subscriptions.append(watcher)
        loaded = asyncio.create_task(self._config_loaded.wait())
        await asyncio.wait({watcher, loaded}, return_when=asyncio.FIRST_COMPLETED)
        if not loaded.done():
            loaded.cancel()
            self.session.subscriptions.remove(watcher)
            # Propagates the watcher's error; a clean exit means the source closed.
            watcher.result()
            raise RuntimeError("config source closed before yielding a value")
        for kind, controller in self.controllers.items():
            self.session.subscriptions.append(asyncio.create_task(self._consume(controller), name=f"feed-{kind}"))
        logger.info("dispatcher started triggers=%s", list(self.controllers))

    async def drain(self) -> None:
        """Wait until no dispatch task is in flight."""

        while self.session.in_flight:
            await asyncio.gather(*list(self.session.in_flight), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel subscriptions, then give in-flight dispatches a grace period.

        A dispatch cancelled mid-send keeps its lease until the TTL expires,
        after which any instance can reclaim it.
        """

        subscriptions, self.session.subscriptions = self.session.subscriptions, []
        for task in subscriptions:
            task.cancel()
        await asyncio.gather(*subscriptions, return_exceptions=True)

        pending = set(self.session.in_flight)
        if pending:
            _, not_done = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
            for task in not_done:
                task.cancel()
            await asyncio.gather(*not_done, return_exceptions=True)
            if not_done:
                logger.warning("dispatcher stopped with %s dispatches cancelled", len(not_done))
        logger.info("dispatcher stopped")

    async def __aenter__(self) -> "NotificationDispatcher":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    def status(self) -> dict:
        return {
            "running": self.running,
            "notifications_available": self.session.config.available,
            "in_flight": len(self.session.in_flight),
            "known_sent": {kind: len(cache) for kind, cache in self.session.known_sent.items()},
        }
