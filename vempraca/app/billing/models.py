"""Domain models for subscription-driven listing visibility."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BillingEventType(str, Enum):
    """Billing events that can affect listing visibility."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"


class SubscriptionStatus(str, Enum):
    """Subscription status as reported by the billing provider."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    CANCELED = "canceled"
    PAUSED = "paused"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "SubscriptionStatus":
        return cls.UNKNOWN

    @property
    def in_good_standing(self) -> bool:
        return self in GOOD_STANDING_STATUSES


GOOD_STANDING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class PaymentFailurePolicy(str, Enum):
    """How a failed invoice payment affects visibility."""

    PESSIMISTIC = "pessimistic"
    OPTIMISTIC = "optimistic"


class CancellationMode(str, Enum):
    """Supported owner-initiated cancellation modes."""

    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"


class ReconcileOutcome(str, Enum):
    """Result of applying a visibility instruction to a listing."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED_GRANDFATHERED = "skipped_grandfathered"


class WebhookOutcome(str, Enum):
    """How a received webhook event was handled."""

    APPLIED = "applied"
    IGNORED = "ignored"
    DROPPED = "dropped"


class BusinessListing(BaseModel):
    """Subset of a directory listing relevant to visibility control."""

    listing_id: str
    owner_id: str
    is_visible: bool = False
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    grandfathered: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingEvent(BaseModel):
    """Provider-neutral billing event consumed by the reconciler."""

    event_id: str
    event_type: BillingEventType
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    listing_ref: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _require_status_for_updates(self) -> "BillingEvent":
        if self.event_type == BillingEventType.SUBSCRIPTION_UPDATED and self.status is None:
            raise ValueError("subscription_updated events require a status")
        return self


class ProviderSubscription(BaseModel):
    """Read model of a subscription held by the billing provider."""

    subscription_id: str
    customer_id: Optional[str] = None
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    listing_ref: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class VisibilityInstruction(BaseModel):
    """Normalized instruction derived from a billing event."""

    listing_ref: str
    visible: bool
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    rebind: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconcileResult(BaseModel):
    """Outcome of a reconciliation and the listing state afterwards."""

    outcome: ReconcileOutcome
    listing: BusinessListing

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookReceipt(BaseModel):
    """Acknowledgement returned to the billing provider."""

    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[BillingEventType] = None
    outcome: WebhookOutcome
    reason: Optional[str] = None
    reconcile: Optional[ReconcileResult] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CancellationResult(BaseModel):
    """Resulting state after an owner-initiated cancellation."""

    listing_id: str
    mode: CancellationMode
    subscription: ProviderSubscription
    is_visible: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    VISIBILITY_UPDATED = "visibility_updated"
    GRANDFATHERED_SKIPPED = "grandfathered_skipped"
    SUBSCRIPTION_CONFLICT = "subscription_conflict"
    REFERENCE_UNRESOLVED = "reference_unresolved"
    LISTING_NOT_FOUND = "listing_not_found"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"


class BillingAuditEvent(BaseModel):
    """Structured audit event for manual follow-up."""

    event_type: BillingAuditEventType
    listing_id: Optional[str] = None
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
