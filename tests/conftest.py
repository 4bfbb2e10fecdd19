"""Shared fakes for dispatch tests: a controllable clock and a recording notifier."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from orderbell.services.dispatch.config_source import NotificationConfig
from orderbell.services.dispatch.notifier import SendResult


T0 = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)
VALID_CONFIG = NotificationConfig(enabled=True, destination="shop@x.com")


class FakeClock:
    """Stands in for the store's server clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)

    def at(self, seconds: float) -> None:
        self.now = T0 + timedelta(seconds=seconds)


class RecordingNotifier:
    """Returns queued results (default: success) and records every call."""

    def __init__(self, results=None, delay: float = 0.0, raises: Exception | None = None) -> None:
        self.results = list(results or [])
        self.delay = delay
        self.raises = raises
        self.calls = []

    async def send(self, payload, destination):
        self.calls.append((payload, destination))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        if self.results:
            return self.results.pop(0)
        return SendResult.sent(f"msg-{len(self.calls)}")


def pending_order(order_no: str = "A-1", **extra) -> dict:
    order = {
        "status": "pending",
        "orderNo": order_no,
        "table": "7",
        "items": [{"name": "Kunafa", "qty": 2, "price": 1.5}],
        "subtotal": 3.0,
        "createdAt": T0.isoformat(),
    }
    order.update(extra)
    return order


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
