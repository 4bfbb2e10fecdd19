"""Lease protocol for one (order, trigger) notification slot.

Every function taking a `NotificationTransaction` is the body of exactly one
store transaction: it reads the current attempt fields, decides, and stages
writes. The store's single-document transaction is the only synchronization
primitive; no client-side lock is involved.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from orderbell.common.config import DispatchSettings
from orderbell.common.state_machine import FAILED, RESERVED, SENT, UNSENT, validate_transition
from orderbell.services.dispatch.payloads import parse_timestamp
from orderbell.services.dispatch.store import DELETE_FIELD, SERVER_TIMESTAMP, NotificationTransaction
from orderbell.services.dispatch.triggers import TriggerDescriptor


class LeaseDecision(str, Enum):
    ACQUIRED = "acquired"
    RECLAIMED = "reclaimed"
    ALREADY_SENT = "already_sent"
    COOLDOWN = "cooldown"
    LEASE_HELD = "lease_held"
    ORDER_MISSING = "order_missing"
    CONFLICT = "conflict"

    @property
    def acquired(self) -> bool:
        return self in (LeaseDecision.ACQUIRED, LeaseDecision.RECLAIMED)


@dataclass(frozen=True)
class LeasePolicy:
    lease_ttl: timedelta = timedelta(minutes=10)
    failure_cooldown: timedelta = timedelta(minutes=2)

    @classmethod
    def from_settings(cls, config: DispatchSettings) -> "LeasePolicy":
        """Lease TTL and failure cooldown from the service settings."""

        return cls(
            lease_ttl=timedelta(seconds=config.lease_ttl_seconds),
            failure_cooldown=timedelta(seconds=config.failure_cooldown_seconds),
        )


@dataclass(frozen=True)
class NotificationAttempt:
    """The attempt fields for one trigger, parsed from the `notifications` map."""

    reserved_at: datetime | None = None
    sent_at: datetime | None = None
    message_id: str | None = None
    failed_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_notifications(cls, notifications: dict[str, Any], trigger: TriggerDescriptor) -> "NotificationAttempt":
        return cls(
            reserved_at=parse_timestamp(notifications.get(trigger.field("ReservedAt"))),
            sent_at=parse_timestamp(notifications.get(trigger.field("SentAt"))),
            message_id=notifications.get(trigger.field("MessageId")),
            failed_at=parse_timestamp(notifications.get(trigger.field("FailedAt"))),
            error=notifications.get(trigger.field("Error")),
        )

    @property
    def state(self) -> str:
        if self.sent_at is not None:
            return SENT
        if self.reserved_at is not None:
            return RESERVED
        if self.failed_at is not None:
            return FAILED
        return UNSENT


@dataclass(frozen=True)
class LeaseGrant:
    """Result of the lease transaction.

    `reserved_at` is the server time written as the lease marker; later
    transactions compare against it to tell whether this attempt still holds
    the lease.
    """

    decision: LeaseDecision
    reserved_at: datetime | None = None

    @property
    def acquired(self) -> bool:
        return self.decision.acquired


def acquire_lease(tx: NotificationTransaction, trigger: TriggerDescriptor, policy: LeasePolicy) -> LeaseGrant:
    """Reserve the slot unless it is sent, cooling down, or leased by someone else."""

    if not tx.exists:
        return LeaseGrant(LeaseDecision.ORDER_MISSING)
    attempt = NotificationAttempt.from_notifications(tx.notifications, trigger)
    if attempt.sent_at is not None:
        return LeaseGrant(LeaseDecision.ALREADY_SENT)
    if attempt.failed_at is not None and tx.now - attempt.failed_at < policy.failure_cooldown:
        return LeaseGrant(LeaseDecision.COOLDOWN)
    if attempt.reserved_at is not None and tx.now - attempt.reserved_at < policy.lease_ttl:
        return LeaseGrant(LeaseDecision.LEASE_HELD)

    validate_transition(attempt.state, RESERVED)
    decision = LeaseDecision.RECLAIMED if attempt.reserved_at is not None else LeaseDecision.ACQUIRED
    tx.update(
        {
            trigger.field("ReservedAt"): SERVER_TIMESTAMP,
            trigger.field("FailedAt"): DELETE_FIELD,
            trigger.field("Error"): DELETE_FIELD,
        }
    )
    return LeaseGrant(decision, reserved_at=tx.now)


def _holds_lease(attempt: NotificationAttempt, grant: LeaseGrant) -> bool:
    return attempt.reserved_at is not None and attempt.reserved_at == grant.reserved_at


def release_lease(tx: NotificationTransaction, trigger: TriggerDescriptor, grant: LeaseGrant) -> bool:
    """Drop our reservation without recording an outcome."""

    if not tx.exists:
        return False
    attempt = NotificationAttempt.from_notifications(tx.notifications, trigger)
    if attempt.sent_at is not None or not _holds_lease(attempt, grant):
        return False
    validate_transition(RESERVED, UNSENT)
    tx.update({trigger.field("ReservedAt"): DELETE_FIELD})
    return True


def record_success(
    tx: NotificationTransaction,
    trigger: TriggerDescriptor,
    grant: LeaseGrant,
    message_id: str | None,
) -> bool:
    """Mark the slot sent. Returns False when `sentAt` was already set."""

    if not tx.exists:
        return False
    attempt = NotificationAttempt.from_notifications(tx.notifications, trigger)
    if attempt.sent_at is not None:
        return False
    tx.update(
        {
            trigger.field("SentAt"): SERVER_TIMESTAMP,
            trigger.field("MessageId"): message_id,
            trigger.field("ReservedAt"): DELETE_FIELD,
            trigger.field("FailedAt"): DELETE_FIELD,
            trigger.field("Error"): DELETE_FIELD,
        }
    )
    return True


def record_failure(tx: NotificationTransaction, trigger: TriggerDescriptor, grant: LeaseGrant, error: str) -> bool:
    """Record the most recent failure and free the slot for a retry after cooldown.

    Nothing is written when the slot is already sent or when another attempt
    has since reclaimed the lease.
    """

    if not tx.exists:
        return False
    attempt = NotificationAttempt.from_notifications(tx.notifications, trigger)
    if attempt.sent_at is not None:
        return False
    if attempt.reserved_at is not None and not _holds_lease(attempt, grant):
        return False
    tx.update(
        {
            trigger.field("FailedAt"): SERVER_TIMESTAMP,
            trigger.field("Error"): error,
            trigger.field("ReservedAt"): DELETE_FIELD,
        }
    )
    return True
