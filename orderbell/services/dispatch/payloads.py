"""Render order snapshots into email-worker payloads."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


TIMESTAMP_FORMAT = "%m/%d/%Y %I:%M %p"


@dataclass(frozen=True)
class RenderContext:
    merchant_name: str = "Your Store"
    dashboard_url: str = ""


@dataclass(frozen=True)
class NotificationPayload:
    """One rendered message: the worker action plus its data block."""

    action: str
    data: dict[str, Any] = field(default_factory=dict)


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes, ISO-8601 strings, and epoch seconds."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(*candidates: Any) -> str:
    for candidate in candidates:
        try:
            parsed = parse_timestamp(candidate)
        except ValueError:
            continue
        if parsed is not None:
            return parsed.strftime(TIMESTAMP_FORMAT)
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def order_items(snapshot: dict[str, Any]) -> list[dict[str, Any]]:
    items = []
    for raw in snapshot.get("items") or []:
        item = {
            "name": raw.get("name") or "Unknown",
            "qty": int(raw.get("qty") or 1),
            "price": float(raw.get("price") or 0.0),
        }
        if raw.get("note") is not None:
            item["note"] = raw["note"]
        items.append(item)
    return items


def _order_summary(order_id: str, snapshot: dict[str, Any], context: RenderContext) -> dict[str, Any]:
    return {
        "orderNo": snapshot.get("orderNo") or order_id,
        "table": snapshot.get("table"),
        "items": order_items(snapshot),
        "subtotal": float(snapshot.get("subtotal") or 0.0),
        "merchantName": context.merchant_name,
        "dashboardUrl": context.dashboard_url,
    }


def render_new_order(order_id: str, snapshot: dict[str, Any], context: RenderContext) -> NotificationPayload:
    data = _order_summary(order_id, snapshot, context)
    data["timestamp"] = format_timestamp(snapshot.get("createdAt"))
    return NotificationPayload(action="order-notification", data=data)


def render_cancellation(order_id: str, snapshot: dict[str, Any], context: RenderContext) -> NotificationPayload:
    data = _order_summary(order_id, snapshot, context)
    # Cancellation time is the last update, not the original order time.
    data["timestamp"] = format_timestamp(snapshot.get("updatedAt"), snapshot.get("createdAt"))
    data["cancellationReason"] = snapshot.get("cancellationReason")
    return NotificationPayload(action="order-cancellation", data=data)
