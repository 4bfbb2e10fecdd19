"""Change feed watchers over order documents.

A feed yields at least one event per matching order while the subscription is
active, and nothing more: duplicates, replays on resubscribe, and reordering
across orders are all expected.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol
from uuid import uuid4

from orderbell.common.events import ORDER_CHANGED, consume_envelopes
from orderbell.common.logging import logger


Predicate = Callable[[dict[str, Any]], bool]

ADDED = "added"
MODIFIED = "modified"


@dataclass(frozen=True)
class ChangeEvent:
    order_id: str
    change_type: str
    snapshot: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid4()))
    trace_id: str = ""


class ChangeFeed(Protocol):
    def subscribe(self, predicate: Predicate, name: str = "orders") -> AsyncIterator[ChangeEvent]:
        ...


class MemoryChangeFeed:
    """In-process fan-out feed.

    New subscribers first receive an `added` replay of the latest snapshot of
    every matching order, the way a live query delivers its initial results.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._latest: dict[str, dict[str, Any]] = {}
        self._subscribers: list[tuple[Predicate, asyncio.Queue]] = []

    def publish(self, order_id: str, snapshot: dict[str, Any], change_type: str = MODIFIED) -> None:
        snapshot = copy.deepcopy(snapshot)
        snapshot["id"] = order_id
        self._latest[order_id] = snapshot
        for predicate, queue in self._subscribers:
            if predicate(snapshot):
                queue.put_nowait(ChangeEvent(order_id, change_type, copy.deepcopy(snapshot)))

    def close(self) -> None:
        for _, queue in self._subscribers:
            queue.put_nowait(self._CLOSED)

    async def subscribe(self, predicate: Predicate, name: str = "orders") -> AsyncIterator[ChangeEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        for order_id, snapshot in self._latest.items():
            if predicate(snapshot):
                queue.put_nowait(ChangeEvent(order_id, ADDED, copy.deepcopy(snapshot)))
        entry = (predicate, queue)
        self._subscribers.append(entry)
        try:
            while True:
                item = await queue.get()
                if item is self._CLOSED:
                    return
                yield item
        finally:
            self._subscribers.remove(entry)


class KafkaChangeFeed:
    """Order changes consumed from the `orders.changed` topic.

    Each subscription runs its own consumer group so every trigger sees every
    change; non-matching snapshots are filtered out client-side.
    """

    def __init__(self, topic: str, group_prefix: str, bootstrap_servers: str | None = None) -> None:
        self.topic = topic
        self.group_prefix = group_prefix
        self.bootstrap_servers = bootstrap_servers

    async def subscribe(self, predicate: Predicate, name: str = "orders") -> AsyncIterator[ChangeEvent]:
        group_id = f"{self.group_prefix}-{name}"
        async for envelope in consume_envelopes(self.topic, group_id, self.bootstrap_servers):
            if envelope.event_type != ORDER_CHANGED:
                continue
            snapshot = envelope.payload.get("order")
            if not isinstance(snapshot, dict):
                logger.warning("order_change_without_snapshot event_id=%s", envelope.event_id)
                continue
            snapshot = dict(snapshot)
            snapshot.setdefault("id", envelope.aggregate_id)
            if not predicate(snapshot):
                continue
            yield ChangeEvent(
                order_id=envelope.aggregate_id,
                change_type=envelope.payload.get("change_type", MODIFIED),
                snapshot=snapshot,
                event_id=envelope.event_id,
                trace_id=envelope.trace_id,
            )
