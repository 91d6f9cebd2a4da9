"""Translate billing events into listing visibility instructions."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .exceptions import UnresolvableReference
from .models import (
    BillingEvent,
    BillingEventType,
    PaymentFailurePolicy,
    SubscriptionStatus,
    VisibilityInstruction,
)

if TYPE_CHECKING:  # pragma: no cover
    from .service import BillingProvider


def decide_visibility(
    event_type: BillingEventType,
    status: Optional[SubscriptionStatus] = None,
    *,
    policy: PaymentFailurePolicy = PaymentFailurePolicy.PESSIMISTIC,
) -> Optional[bool]:
    """Return the desired visibility for an event, or ``None`` to leave it unchanged.

    Visibility is a projection of whether the subscription is in good standing
    and is recomputed from every event on its own.
    """

    if event_type == BillingEventType.CHECKOUT_COMPLETED:
        return True
    if event_type == BillingEventType.SUBSCRIPTION_UPDATED:
        return status is not None and status.in_good_standing
    if event_type == BillingEventType.SUBSCRIPTION_DELETED:
        return False
    if event_type == BillingEventType.INVOICE_PAYMENT_FAILED:
        # Optimistic mode waits for the provider's dunning to end in an update or deletion.
        if policy == PaymentFailurePolicy.OPTIMISTIC:
            return None
        return False
    if event_type == BillingEventType.INVOICE_PAYMENT_SUCCEEDED:
        return True
    raise ValueError(f"Unhandled billing event type: {event_type!r}")


def classify_event(
    event: BillingEvent,
    *,
    provider: "BillingProvider",
    policy: PaymentFailurePolicy = PaymentFailurePolicy.PESSIMISTIC,
) -> Optional[VisibilityInstruction]:
    """Build the visibility instruction for ``event``.

    Returns ``None`` when the configured policy leaves visibility untouched.
    Raises :class:`UnresolvableReference` when neither the event nor the
    provider's copy of the subscription names a listing.
    """

    visible = decide_visibility(event.event_type, event.status, policy=policy)
    if visible is None:
        return None

    listing_ref = event.listing_ref
    customer_id = event.customer_id
    if not listing_ref and event.subscription_id:
        subscription = provider.retrieve_subscription(event.subscription_id)
        if subscription is not None:
            listing_ref = subscription.listing_ref
            customer_id = customer_id or subscription.customer_id

    if not listing_ref:
        raise UnresolvableReference(
            detail={"event_id": event.event_id, "subscription_id": event.subscription_id or ""}
        )

    return VisibilityInstruction(
        listing_ref=listing_ref,
        visible=visible,
        subscription_id=event.subscription_id,
        customer_id=customer_id,
        rebind=event.event_type == BillingEventType.CHECKOUT_COMPLETED,
    )


__all__ = ["classify_event", "decide_visibility"]
