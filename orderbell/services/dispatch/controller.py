"""Generic dispatch controller: one instance per trigger.

Decides, per change event, whether this instance sends the notification for
an (order, trigger) pair. The order store transaction is the single source of
truth for who wins; feed arrival order implies nothing.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from orderbell.common.logging import event_id_ctx, logger, order_id_ctx, trace_id_ctx, trigger_ctx
from orderbell.common.metrics import (
    dispatch_outcomes_total,
    duplicate_events_skipped_total,
    known_sent_entries,
    lease_decisions_total,
    notification_send_seconds,
    outcome_write_errors_total,
    send_failures_total,
)
from orderbell.services.dispatch.feed import ChangeEvent
from orderbell.services.dispatch.lease import (
    LeaseDecision,
    LeaseGrant,
    LeasePolicy,
    acquire_lease,
    record_failure,
    record_success,
    release_lease,
)
from orderbell.services.dispatch.notifier import OutboundNotifier, SendResult, classify_error
from orderbell.services.dispatch.payloads import NotificationPayload, RenderContext
from orderbell.services.dispatch.session import DispatchSession
from orderbell.services.dispatch.store import OrderStore, TransactionConflict
from orderbell.services.dispatch.triggers import TriggerDescriptor


class DispatchStatus(str, Enum):
    KNOWN_SENT = "known_sent"
    CONFIG_UNAVAILABLE = "config_unavailable"
    LEASE_NOT_ACQUIRED = "lease_not_acquired"
    LEASE_RELEASED = "lease_released"
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchOutcome:
    """What handling one change event amounted to.

    `recorded` tells whether the final transaction actually wrote: a success
    against an already-sent slot, or a failure after the lease was reclaimed,
    is reported but leaves the document untouched.
    """

    status: DispatchStatus
    order_id: str
    trigger: str
    decision: LeaseDecision | None = None
    message_id: str | None = None
    error: str | None = None
    recorded: bool = False


class DispatchController:
    """Runs the lease protocol for one trigger against the order store."""

    def __init__(
        self,
        trigger: TriggerDescriptor,
        store: OrderStore,
        notifier: OutboundNotifier,
        session: DispatchSession,
        policy: LeasePolicy | None = None,
        render_context: RenderContext | None = None,
        service_name: str = "notification-dispatch",
    ) -> None:
        self.trigger = trigger
        self.store = store
        self.notifier = notifier
        self.session = session
        self.policy = policy or LeasePolicy()
        self.render_context = render_context or RenderContext()
        self.service_name = service_name

    @property
    def known_sent(self):
        return self.session.known_sent[self.trigger.kind]

    def _outcome(self, status: DispatchStatus, order_id: str, **fields) -> DispatchOutcome:
        dispatch_outcomes_total.labels(
            service=self.service_name,
            trigger=self.trigger.kind,
            outcome=status.value,
        ).inc()
        return DispatchOutcome(status=status, order_id=order_id, trigger=self.trigger.kind, **fields)

    def _remember_sent(self, order_id: str) -> None:
        self.known_sent.add(order_id)
        known_sent_entries.labels(service=self.service_name, trigger=self.trigger.kind).set(len(self.known_sent))

    async def _acquire(self, order_id: str) -> LeaseGrant:
        try:
            grant = await self.store.run_transaction(
                order_id, lambda tx: acquire_lease(tx, self.trigger, self.policy)
            )
        except TransactionConflict as exc:
            logger.info("lease_conflict order_id=%s error=%s", order_id, exc)
            grant = LeaseGrant(LeaseDecision.CONFLICT)
        lease_decisions_total.labels(
            service=self.service_name,
            trigger=self.trigger.kind,
            decision=grant.decision.value,
        ).inc()
        return grant

    async def _write(self, order_id: str, fn, what: str) -> bool:
        """Run a follow-up transaction; a conflict leaves the lease to expire by TTL."""

        try:
            return await self.store.run_transaction(order_id, fn)
        except TransactionConflict:
            logger.exception("%s_write_failed order_id=%s", what, order_id)
            outcome_write_errors_total.labels(service=self.service_name, trigger=self.trigger.kind).inc()
            return False

    async def _send(self, payload: NotificationPayload, destination: str) -> SendResult:
        with notification_send_seconds.labels(service=self.service_name, trigger=self.trigger.kind).time():
            try:
                return await self.notifier.send(payload, destination)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Transport-level errors count as an ordinary failed attempt.
                return SendResult.failed(f"Exception: {exc}")

    async def handle(self, event: ChangeEvent) -> DispatchOutcome:
        tokens = [
            (order_id_ctx, order_id_ctx.set(event.order_id)),
            (trigger_ctx, trigger_ctx.set(self.trigger.kind)),
            (event_id_ctx, event_id_ctx.set(event.event_id)),
            (trace_id_ctx, trace_id_ctx.set(event.trace_id)),
        ]
        try:
            return await self._handle(event)
        finally:
            for var, token in reversed(tokens):
                var.reset(token)

    async def _handle(self, event: ChangeEvent) -> DispatchOutcome:
        order_id = event.order_id

        if order_id in self.known_sent:
            duplicate_events_skipped_total.labels(service=self.service_name, trigger=self.trigger.kind).inc()
            return self._outcome(DispatchStatus.KNOWN_SENT, order_id)

        if not self.session.config.available:
            logger.debug("notifications unavailable, skipping order_id=%s", order_id)
            return self._outcome(DispatchStatus.CONFIG_UNAVAILABLE, order_id)

        grant = await self._acquire(order_id)
        if not grant.acquired:
            if grant.decision is LeaseDecision.ALREADY_SENT:
                self._remember_sent(order_id)
            return self._outcome(DispatchStatus.LEASE_NOT_ACQUIRED, order_id, decision=grant.decision)
        if grant.decision is LeaseDecision.RECLAIMED:
            logger.warning("stale lease reclaimed order_id=%s", order_id)

        # Config may have flipped while the lease transaction was in flight.
        destination = self.session.config.deliverable_destination
        if destination is None:
            released = await self._write(
                order_id, lambda tx: release_lease(tx, self.trigger, grant), "lease_release"
            )
            logger.info("notifications disabled after reservation, lease released order_id=%s", order_id)
            return self._outcome(
                DispatchStatus.LEASE_RELEASED, order_id, decision=grant.decision, recorded=released
            )

        try:
            payload = self.trigger.render(order_id, event.snapshot, self.render_context)
        except Exception as exc:
            logger.exception("payload_render_failed order_id=%s", order_id)
            payload = None
            result = SendResult.failed(f"Exception: {exc}")
        else:
            result = await self._send(payload, destination)

        if result.success:
            recorded = await self._write(
                order_id,
                lambda tx: record_success(tx, self.trigger, grant, result.message_id),
                "outcome",
            )
            self._remember_sent(order_id)
            logger.info(
                "notification sent order_id=%s order_no=%s message_id=%s recorded=%s",
                order_id,
                payload.data.get("orderNo"),
                result.message_id,
                recorded,
            )
            return self._outcome(
                DispatchStatus.SENT,
                order_id,
                decision=grant.decision,
                message_id=result.message_id,
                recorded=recorded,
            )

        error = result.error or "Unknown error"
        error_kind = classify_error(error)
        send_failures_total.labels(
            service=self.service_name,
            trigger=self.trigger.kind,
            error_kind=error_kind,
        ).inc()
        recorded = await self._write(
            order_id, lambda tx: record_failure(tx, self.trigger, grant, error), "outcome"
        )
        if error_kind == "rate_limited":
            logger.warning("notification rate limited order_id=%s error=%s, retry after cooldown", order_id, error)
        else:
            logger.warning("notification failed order_id=%s error=%s", order_id, error)
        return self._outcome(
            DispatchStatus.FAILED,
            order_id,
            decision=grant.decision,
            error=error,
            recorded=recorded,
        )
