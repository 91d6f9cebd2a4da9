"""Application wiring for the subscription service."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Dict, Optional
from uuid import uuid4

from ..billing import (
    BillingAuditEvent,
    BillingConfig,
    BillingEvent,
    BillingEventLogger,
    BillingProvider,
    MissingConfiguration,
    ProviderSubscription,
    SubscriptionService,
    SubscriptionStatus,
    load_billing_config,
)
from ..billing.repository import PostgresListingRepository
from ..billing.stripe_provider import StripeBillingProvider, parse_stripe_webhook


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s listing=%s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.listing_id,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


class LocalSandboxBillingProvider(BillingProvider):
    """In-memory provider for local development without Stripe credentials.

    Webhooks are still verified with Stripe's signature scheme, so
    ``stripe listen`` or locally signed payloads work against it.
    """

    def __init__(self, *, webhook_secret: Optional[str]) -> None:
        self._webhook_secret = webhook_secret
        self._subscriptions: Dict[str, ProviderSubscription] = {}

    def register(self, subscription: ProviderSubscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        return parse_stripe_webhook(payload, signature, webhook_secret=self._webhook_secret)

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        return self._subscriptions.get(subscription_id)

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        current = self._subscriptions.get(subscription_id) or ProviderSubscription(
            subscription_id=subscription_id,
            status=SubscriptionStatus.ACTIVE,
        )
        canceled = current.model_copy(update={"status": SubscriptionStatus.CANCELED, "cancel_at_period_end": False})
        self._subscriptions[subscription_id] = canceled
        return canceled

    def schedule_cancellation(self, subscription_id: str) -> ProviderSubscription:
        current = self._subscriptions.get(subscription_id) or ProviderSubscription(
            subscription_id=subscription_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        )
        scheduled = current.model_copy(update={"cancel_at_period_end": True})
        self._subscriptions[subscription_id] = scheduled
        return scheduled

    def create_checkout_session(
        self,
        *,
        price_id: str,
        listing_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        session_id = f"cs_{uuid4().hex}"
        return {
            "id": session_id,
            "url": f"https://billing.local/checkout/{session_id}",
            "metadata": {"negocioId": listing_id},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session_id = f"ps_{uuid4().hex}"
        return {"id": session_id, "url": f"https://billing.local/portal/{customer_id}", "return_url": return_url}


def build_billing_provider(config: BillingConfig) -> BillingProvider:
    if config.billing_secret_key:
        return StripeBillingProvider(config)
    if config.sandbox_mode:
        logger.warning("STRIPE_SECRET_KEY not set; using the local sandbox billing provider")
        return LocalSandboxBillingProvider(webhook_secret=config.webhook_signing_secret)
    raise MissingConfiguration(message="STRIPE_SECRET_KEY is not configured")


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    config = load_billing_config()
    service = SubscriptionService(
        repository=PostgresListingRepository(),
        provider=build_billing_provider(config),
        event_logger=LoggingBillingEventLogger(),
        config=config,
    )
    return service


__all__ = [
    "LocalSandboxBillingProvider",
    "LoggingBillingEventLogger",
    "build_billing_provider",
    "get_subscription_service",
]
