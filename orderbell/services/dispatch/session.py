"""Per-instance dispatch session state."""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field

from orderbell.services.dispatch.config_source import NotificationConfig


class KnownSentCache:
    """Bounded insertion-ordered set of order ids confirmed sent.

    Purely a fast path: a miss just means the store transaction decides.
    """

    def __init__(self, capacity: int = 100) -> None:
        self.capacity = capacity
        self._entries: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, order_id: str) -> None:
        if order_id in self._entries:
            return
        self._entries[order_id] = None
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def snapshot(self) -> list[str]:
        return list(self._entries)


@dataclass
class DispatchSession:
    """Mutable state of one running dispatcher.

    `config` is replaced wholesale by the config watcher; controllers read it
    at the gate and again after acquiring a lease.
    """

    known_sent: dict[str, KnownSentCache]
    config: NotificationConfig = field(default_factory=NotificationConfig.disabled)
    subscriptions: list[asyncio.Task] = field(default_factory=list)
    in_flight: set[asyncio.Task] = field(default_factory=set)

    @classmethod
    def for_triggers(cls, trigger_kinds, capacity: int = 100) -> "DispatchSession":
        return cls(known_sent={kind: KnownSentCache(capacity) for kind in trigger_kinds})
