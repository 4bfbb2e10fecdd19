"""Trigger descriptors: what makes an order eligible for which notification."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from orderbell.common.config import DispatchSettings
from orderbell.services.dispatch.payloads import (
    NotificationPayload,
    RenderContext,
    parse_timestamp,
    render_cancellation,
    render_new_order,
)


NEW_ORDER = "new_order"
CANCELLATION = "cancellation"

ORDER_STATUSES = ("pending", "accepted", "preparing", "ready", "served", "cancelled")

Renderer = Callable[[str, dict[str, Any], RenderContext], NotificationPayload]


@dataclass(frozen=True)
class TriggerDescriptor:
    """Everything the generic dispatch controller needs to know about a trigger.

    `field_prefix` namespaces the attempt fields inside the order's
    `notifications` map, e.g. `cancelledEmailSentAt`.
    """

    kind: str
    field_prefix: str
    statuses: frozenset[str]
    render: Renderer
    max_age: timedelta | None = None

    def __post_init__(self) -> None:
        unknown = set(self.statuses) - set(ORDER_STATUSES)
        if unknown:
            raise ValueError(f"unknown order statuses for trigger {self.kind}: {sorted(unknown)}")

    def field(self, suffix: str) -> str:
        return f"{self.field_prefix}{suffix}"

    def matches(self, snapshot: dict[str, Any], now: datetime | None = None) -> bool:
        if snapshot.get("status") not in self.statuses:
            return False
        if self.max_age is None:
            return True
        try:
            created_at = parse_timestamp(snapshot.get("createdAt"))
        except ValueError:
            return False
        if created_at is None:
            return False
        return (now or datetime.now(timezone.utc)) - created_at <= self.max_age


def new_order_trigger(max_age_seconds: int | None = None) -> TriggerDescriptor:
    """Pending orders, optionally only those created within `max_age_seconds`."""

    return TriggerDescriptor(
        kind=NEW_ORDER,
        field_prefix="newOrderEmail",
        statuses=frozenset({"pending"}),
        render=render_new_order,
        max_age=timedelta(seconds=max_age_seconds) if max_age_seconds else None,
    )


def cancellation_trigger() -> TriggerDescriptor:
    """Cancelled orders, regardless of age."""

    return TriggerDescriptor(
        kind=CANCELLATION,
        field_prefix="cancelledEmail",
        statuses=frozenset({"cancelled"}),
        render=render_cancellation,
    )


def build_triggers(config: DispatchSettings) -> tuple[TriggerDescriptor, ...]:
    """Both triggers, configured from settings."""

    return (new_order_trigger(config.new_order_max_age_seconds), cancellation_trigger())
