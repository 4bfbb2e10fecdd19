"""Payload rendering and trigger predicates."""

from datetime import datetime, timedelta, timezone

import pytest

from orderbell.services.dispatch.payloads import RenderContext, format_timestamp, render_cancellation, render_new_order
from orderbell.services.dispatch.triggers import TriggerDescriptor, cancellation_trigger, new_order_trigger

from conftest import T0


CONTEXT = RenderContext(merchant_name="Sweets", dashboard_url="https://dash.test")


def test_new_order_payload():
    snapshot = {
        "status": "pending",
        "orderNo": "A-17",
        "table": "4",
        "items": [{"name": "Kunafa", "qty": 2, "price": 1.5, "note": "extra syrup"}, {"qty": None}],
        "subtotal": 3,
        "createdAt": datetime(2026, 1, 5, 14, 30, tzinfo=timezone.utc),
    }

    payload = render_new_order("ORD-1", snapshot, CONTEXT)

    assert payload.action == "order-notification"
    assert payload.data == {
        "orderNo": "A-17",
        "table": "4",
        "items": [
            {"name": "Kunafa", "qty": 2, "price": 1.5, "note": "extra syrup"},
            {"name": "Unknown", "qty": 1, "price": 0.0},
        ],
        "subtotal": 3.0,
        "merchantName": "Sweets",
        "dashboardUrl": "https://dash.test",
        "timestamp": "01/05/2026 02:30 PM",
    }


def test_cancellation_payload_prefers_update_time_and_falls_back_to_order_id():
    snapshot = {
        "status": "cancelled",
        "createdAt": "2026-01-05T09:00:00Z",
        "updatedAt": "2026-01-05T09:45:00+00:00",
        "cancellationReason": "Customer request",
    }

    payload = render_cancellation("ORD-2", snapshot, CONTEXT)

    assert payload.action == "order-cancellation"
    assert payload.data["orderNo"] == "ORD-2"
    assert payload.data["timestamp"] == "01/05/2026 09:45 AM"
    assert payload.data["cancellationReason"] == "Customer request"
    assert payload.data["items"] == []


def test_unparseable_timestamp_falls_through_to_next_candidate():
    assert format_timestamp("yesterday", "2026-01-05T09:00:00") == "01/05/2026 09:00 AM"


def test_trigger_predicates():
    new_order = new_order_trigger()
    cancellation = cancellation_trigger()

    assert new_order.matches({"status": "pending"})
    assert not new_order.matches({"status": "accepted"})
    assert cancellation.matches({"status": "cancelled"})
    assert not cancellation.matches({"status": "pending"})
    assert new_order.field("SentAt") == "newOrderEmailSentAt"
    assert cancellation.field("Error") == "cancelledEmailError"


def test_new_order_max_age_filters_old_orders():
    trigger = new_order_trigger(max_age_seconds=900)

    assert trigger.matches({"status": "pending", "createdAt": T0.isoformat()}, now=T0 + timedelta(minutes=10))
    assert not trigger.matches({"status": "pending", "createdAt": T0.isoformat()}, now=T0 + timedelta(minutes=20))
    assert not trigger.matches({"status": "pending"}, now=T0)


def test_trigger_rejects_unknown_statuses():
    with pytest.raises(ValueError):
        TriggerDescriptor(
            kind="refund",
            field_prefix="refundEmail",
            statuses=frozenset({"refunded"}),
            render=render_new_order,
        )
