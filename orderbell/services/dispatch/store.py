"""Order store adapters exposing single-document transactions.

A transaction body is a plain synchronous callable that receives a
`NotificationTransaction`, reads the order's `notifications` map and the
store's clock, and stages merge-writes with `update()`. The store commits the
staged writes atomically with the read, or not at all.
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError

from orderbell.services.dispatch.models import OrderDocument


T = TypeVar("T")


class _FieldSentinel:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


# Resolved by the store at commit time.
SERVER_TIMESTAMP = _FieldSentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _FieldSentinel("DELETE_FIELD")


class TransactionConflict(Exception):
    """The store could not commit a transaction because of a concurrent write."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationTransaction:
    """Read view + staged writes for one order's `notifications` map."""

    def __init__(self, order_id: str, exists: bool, notifications: dict[str, Any], now: datetime) -> None:
        self.order_id = order_id
        self.exists = exists
        self.notifications = dict(notifications or {})
        self.now = now
        self.writes: dict[str, Any] = {}

    def update(self, fields: dict[str, Any]) -> None:
        self.writes.update(fields)


def apply_writes(
    notifications: dict[str, Any],
    writes: dict[str, Any],
    now: datetime,
    serialize_time: Callable[[datetime], Any] = lambda value: value,
) -> dict[str, Any]:
    """Merge staged writes into a copy of the `notifications` map."""

    merged = dict(notifications or {})
    for field, value in writes.items():
        if value is DELETE_FIELD:
            merged.pop(field, None)
        elif value is SERVER_TIMESTAMP:
            merged[field] = serialize_time(now)
        else:
            merged[field] = value
    return merged


class OrderStore(Protocol):
    async def run_transaction(self, order_id: str, fn: Callable[[NotificationTransaction], T]) -> T:
        ...


class MemoryOrderStore:
    """In-process document store used for local runs and tests.

    Transactions are serialized by one lock; `latency` is awaited inside it so
    concurrent callers really queue behind each other.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None, latency: float = 0.0) -> None:
        self.clock = clock or utc_now
        self.latency = latency
        self._orders: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self.commits = 0

    def put(self, order_id: str, order: dict[str, Any]) -> dict[str, Any]:
        document = copy.deepcopy(order)
        document["id"] = order_id
        document.setdefault("notifications", {})
        self._orders[order_id] = document
        return copy.deepcopy(document)

    def get(self, order_id: str) -> dict[str, Any] | None:
        document = self._orders.get(order_id)
        return copy.deepcopy(document) if document is not None else None

    async def run_transaction(self, order_id: str, fn: Callable[[NotificationTransaction], T]) -> T:
        async with self._lock:
            if self.latency:
                await asyncio.sleep(self.latency)
            document = self._orders.get(order_id)
            tx = NotificationTransaction(
                order_id,
                document is not None,
                document.get("notifications", {}) if document is not None else {},
                self.clock(),
            )
            result = fn(tx)
            if document is not None and tx.writes:
                document["notifications"] = apply_writes(document.get("notifications", {}), tx.writes, tx.now)
                self.commits += 1
            return result


def _iso(value: datetime) -> str:
    return value.isoformat()


class SqlOrderStore:
    """Order store backed by the `orders` table.

    The row is locked with `SELECT ... FOR UPDATE` for the duration of the
    transaction and the database's `now()` is the clock, so every instance
    compares lease ages against the same time source. Timestamps are stored in
    the JSON map as ISO-8601 strings.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] | None = None) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def _server_now(self, db) -> datetime:
        if self.clock is not None:
            return self.clock()
        now = db.execute(select(func.now())).scalar_one()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _run_transaction_sync(self, order_id: str, fn: Callable[[NotificationTransaction], T]) -> T:
        try:
            with self.session_factory() as db:
                now = self._server_now(db)
                order = db.execute(
                    select(OrderDocument).where(OrderDocument.order_id == order_id).with_for_update()
                ).scalar_one_or_none()
                tx = NotificationTransaction(
                    order_id,
                    order is not None,
                    order.notifications if order is not None else {},
                    now,
                )
                result = fn(tx)
                if order is not None and tx.writes:
                    order.notifications = apply_writes(order.notifications or {}, tx.writes, now, _iso)
                    db.commit()
                else:
                    db.rollback()
                return result
        except DBAPIError as exc:
            raise TransactionConflict(f"order {order_id}: {exc}") from exc

    async def run_transaction(self, order_id: str, fn: Callable[[NotificationTransaction], T]) -> T:
        return await asyncio.to_thread(self._run_transaction_sync, order_id, fn)

    def upsert_order(self, order_id: str, merchant_id: str, branch_id: str, order: dict[str, Any]) -> None:
        """Write an order body (used by local tooling and tests)."""

        body = {key: value for key, value in order.items() if key not in {"id", "status", "notifications"}}
        with self.session_factory() as db:
            row = db.get(OrderDocument, order_id)
            if row is None:
                row = OrderDocument(
                    order_id=order_id,
                    merchant_id=merchant_id,
                    branch_id=branch_id,
                    status=order["status"],
                    body=body,
                    notifications=dict(order.get("notifications") or {}),
                )
                db.add(row)
            else:
                row.status = order["status"]
                row.body = body
            db.commit()

    def get_order(self, order_id: str) -> dict[str, Any] | None:
        with self.session_factory() as db:
            row = db.get(OrderDocument, order_id)
            return row.snapshot() if row is not None else None
