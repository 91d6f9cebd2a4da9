"""Stripe integration for subscription billing."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional
from uuid import uuid4

import stripe

from .config import BillingConfig
from .exceptions import (
    InvalidPayload,
    InvalidSignature,
    MissingConfiguration,
    ProviderRejected,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from .models import BillingEvent, BillingEventType, ProviderSubscription, SubscriptionStatus

logger = logging.getLogger(__name__)

# Metadata key written on checkout sessions and subscriptions.
LISTING_METADATA_KEY = "negocioId"

STRIPE_EVENT_TYPES: Dict[str, BillingEventType] = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_DELETED,
    "invoice.payment_failed": BillingEventType.INVOICE_PAYMENT_FAILED,
    "invoice.payment_succeeded": BillingEventType.INVOICE_PAYMENT_SUCCEEDED,
}


def _as_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"Unsupported Stripe object: {type(value)!r}")


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        # Expanded objects carry their id.
        return _optional_str(value.get("id"))
    return str(value)


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _listing_ref(metadata: Any) -> Optional[str]:
    if not isinstance(metadata, Mapping):
        return None
    return _optional_str(metadata.get(LISTING_METADATA_KEY))


def _invoice_subscription(invoice: Mapping[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Return ``(subscription_id, listing_ref)`` for legacy and current invoice shapes."""

    subscription_id = _optional_str(invoice.get("subscription"))
    listing_ref = _listing_ref((invoice.get("subscription_details") or {}).get("metadata"))

    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    if details:
        subscription_id = subscription_id or _optional_str(details.get("subscription"))
        listing_ref = listing_ref or _listing_ref(details.get("metadata"))
    return subscription_id, listing_ref


def subscription_from_stripe(subscription: Any) -> ProviderSubscription:
    """Convert a Stripe subscription object into the provider-neutral read model."""

    data = _as_dict(subscription)
    period_end = data.get("current_period_end")
    if period_end is None:
        # Newer API versions report the period on subscription items.
        items = (data.get("items") or {}).get("data") or []
        if items:
            period_end = items[0].get("current_period_end")
    return ProviderSubscription(
        subscription_id=str(data["id"]),
        customer_id=_optional_str(data.get("customer")),
        status=SubscriptionStatus(str(data.get("status") or SubscriptionStatus.UNKNOWN.value)),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        current_period_end=_timestamp(period_end),
        listing_ref=_listing_ref(data.get("metadata")),
    )


def billing_event_from_stripe(event: Any) -> Optional[BillingEvent]:
    """Map a verified Stripe event to a :class:`BillingEvent`.

    Event types that do not affect visibility map to ``None``.
    """

    data = _as_dict(event)
    event_type = STRIPE_EVENT_TYPES.get(str(data.get("type")))
    if event_type is None:
        return None

    obj = (data.get("data") or {}).get("object") or {}
    status: Optional[SubscriptionStatus] = None

    if event_type == BillingEventType.CHECKOUT_COMPLETED:
        subscription_id = _optional_str(obj.get("subscription"))
        if obj.get("mode") not in (None, "subscription") or subscription_id is None:
            # One-off payment sessions grant no visibility.
            return None
        listing_ref = _listing_ref(obj.get("metadata")) or _optional_str(obj.get("client_reference_id"))
    elif event_type in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_DELETED):
        subscription_id = _optional_str(obj.get("id"))
        listing_ref = _listing_ref(obj.get("metadata"))
        status = SubscriptionStatus(str(obj.get("status") or SubscriptionStatus.UNKNOWN.value))
    else:
        subscription_id, listing_ref = _invoice_subscription(obj)

    return BillingEvent(
        event_id=str(data.get("id") or f"evt_{uuid4().hex}"),
        event_type=event_type,
        subscription_id=subscription_id,
        customer_id=_optional_str(obj.get("customer")),
        status=status,
        listing_ref=listing_ref,
        occurred_at=_timestamp(data.get("created")) or datetime.now(timezone.utc),
    )


def parse_stripe_webhook(
    payload: bytes,
    signature: Optional[str],
    *,
    webhook_secret: Optional[str],
) -> Optional[BillingEvent]:
    """Verify the ``Stripe-Signature`` header and normalize the event."""

    if not webhook_secret:
        raise MissingConfiguration(message="STRIPE_WEBHOOK_SECRET is not configured")
    if not signature:
        raise InvalidSignature()

    try:
        event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed")
        raise InvalidSignature() from exc
    except ValueError as exc:
        raise InvalidPayload() from exc

    try:
        return billing_event_from_stripe(event)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Stripe webhook payload could not be normalized: %s", exc)
        raise InvalidPayload() from exc


@contextmanager
def _stripe_call(action: str) -> Iterator[None]:
    """Map Stripe SDK failures onto the billing error taxonomy."""

    try:
        yield
    except stripe.APIConnectionError as exc:
        message = str(exc).lower()
        if "timed out" in message or "timeout" in message:
            raise UpstreamTimeout(message=f"Stripe timed out during {action}") from exc
        raise UpstreamUnavailable(message=f"Stripe unreachable during {action}") from exc
    except (stripe.RateLimitError, stripe.APIError) as exc:
        raise UpstreamUnavailable(message=f"Stripe unavailable during {action}") from exc
    except stripe.StripeError as exc:
        logger.warning("Stripe rejected %s: %s", action, exc.user_message or exc)
        raise ProviderRejected(message=f"Stripe rejected {action}") from exc


class StripeBillingProvider:
    """Billing provider backed by the Stripe API."""

    def __init__(self, config: BillingConfig, *, client: Optional[stripe.StripeClient] = None) -> None:
        if not config.billing_secret_key:
            raise MissingConfiguration(message="STRIPE_SECRET_KEY is not configured")
        self._config = config
        self._client = client or stripe.StripeClient(
            config.billing_secret_key,
            stripe_version=config.api_version,
            max_network_retries=config.provider_max_network_retries,
            http_client=stripe.RequestsClient(timeout=config.provider_timeout_seconds),
        )

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        return parse_stripe_webhook(payload, signature, webhook_secret=self._config.webhook_signing_secret)

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        with _stripe_call("subscription lookup"):
            try:
                subscription = self._client.v1.subscriptions.retrieve(subscription_id)
            except stripe.InvalidRequestError as exc:
                if exc.http_status == 404:
                    return None
                raise
        return subscription_from_stripe(subscription)

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        with _stripe_call("cancellation"):
            try:
                subscription = self._client.v1.subscriptions.cancel(subscription_id)
            except stripe.InvalidRequestError:
                # Stripe rejects a second cancel; report the already canceled subscription.
                existing = self.retrieve_subscription(subscription_id)
                if existing is not None and existing.status == SubscriptionStatus.CANCELED:
                    return existing
                raise
        return subscription_from_stripe(subscription)

    def schedule_cancellation(self, subscription_id: str) -> ProviderSubscription:
        with _stripe_call("cancellation scheduling"):
            subscription = self._client.v1.subscriptions.update(
                subscription_id,
                params={"cancel_at_period_end": True},
            )
        return subscription_from_stripe(subscription)

    def create_checkout_session(
        self,
        *,
        price_id: str,
        listing_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        metadata = {LISTING_METADATA_KEY: listing_id}
        with _stripe_call("checkout"):
            session = self._client.v1.checkout.sessions.create(
                params={
                    "mode": "subscription",
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "client_reference_id": listing_id,
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                    "billing_address_collection": "auto",
                    "allow_promotion_codes": True,
                }
            )
        return _as_dict(session)

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        with _stripe_call("billing portal"):
            session = self._client.v1.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        return _as_dict(session)


__all__ = [
    "LISTING_METADATA_KEY",
    "StripeBillingProvider",
    "billing_event_from_stripe",
    "parse_stripe_webhook",
    "subscription_from_stripe",
]
