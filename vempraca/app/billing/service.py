"""Core services keeping listing visibility in line with subscription state."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from urllib.parse import quote

from .classifier import classify_event
from .config import BillingConfig
from .exceptions import (
    ConflictingSubscription,
    Forbidden,
    ListingNotFound,
    MissingConfiguration,
    NoCustomerLinked,
    NoSubscriptionLinked,
    TerminalEventError,
    UnresolvableReference,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BusinessListing,
    CancellationMode,
    CancellationResult,
    PaymentFailurePolicy,
    ProviderSubscription,
    ReconcileOutcome,
    ReconcileResult,
    VisibilityInstruction,
    WebhookOutcome,
    WebhookReceipt,
)

logger = logging.getLogger("billing")


class BillingProvider(Protocol):
    """External subscription billing system."""

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[BillingEvent]:
        """Verify and normalize a webhook delivery; ``None`` for unhandled event types."""

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """Fetch a subscription, or ``None`` when the provider does not know it."""

    def cancel_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Cancel a subscription immediately."""

    def schedule_cancellation(self, subscription_id: str) -> ProviderSubscription:
        """Cancel a subscription at the end of the current period."""

    def create_checkout_session(
        self,
        *,
        price_id: str,
        listing_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, object]:
        """Create a hosted subscription checkout session."""

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        """Create a provider managed billing portal session."""


class ListingRepository(Protocol):
    """Persistence operations required for visibility control."""

    def get_listing(self, listing_id: str) -> Optional[BusinessListing]:
        ...

    def update_visibility(
        self,
        listing_id: str,
        *,
        is_visible: bool,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        rebind: bool = False,
    ) -> Optional[BusinessListing]:
        """Apply a guarded single-row update.

        The row is only written when it is not grandfathered and, unless
        ``rebind`` is set, its recorded subscription is empty or equal to
        ``subscription_id``. Returns ``None`` when no row matched.
        """


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


@dataclass
class VisibilityReconciler:
    """Applies desired visibility to exactly one listing."""

    repository: ListingRepository
    event_logger: BillingEventLogger

    def apply(self, instruction: VisibilityInstruction) -> ReconcileResult:
        return self.reconcile(
            instruction.listing_ref,
            instruction.visible,
            subscription_id=instruction.subscription_id,
            customer_id=instruction.customer_id,
            rebind=instruction.rebind,
        )

    def reconcile(
        self,
        listing_ref: str,
        desired_visible: bool,
        *,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        rebind: bool = False,
    ) -> ReconcileResult:
        listing = self.repository.get_listing(listing_ref)
        if listing is None:
            raise ListingNotFound(detail={"listing_id": listing_ref})

        if listing.grandfathered:
            return self._skip_grandfathered(listing)

        if not rebind:
            self._check_subscription(listing, subscription_id)

        if _already_applied(listing, desired_visible, subscription_id, customer_id):
            return ReconcileResult(outcome=ReconcileOutcome.UNCHANGED, listing=listing)

        updated = self.repository.update_visibility(
            listing_ref,
            is_visible=desired_visible,
            subscription_id=subscription_id,
            customer_id=customer_id,
            rebind=rebind,
        )
        if updated is None:
            # The row changed between the read and the guarded write.
            current = self.repository.get_listing(listing_ref)
            if current is None:
                raise ListingNotFound(detail={"listing_id": listing_ref})
            if current.grandfathered:
                return self._skip_grandfathered(current)
            self._check_subscription(current, subscription_id)
            raise ConflictingSubscription(
                detail={"listing_id": listing_ref, "received_subscription_id": subscription_id or ""}
            )

        logger.info(
            "Listing %s visibility %s -> %s subscription=%s",
            listing_ref,
            listing.is_visible,
            updated.is_visible,
            updated.subscription_id,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.VISIBILITY_UPDATED,
                listing_id=listing_ref,
                subscription_id=updated.subscription_id,
                metadata={"is_visible": str(updated.is_visible).lower(), "rebind": str(rebind).lower()},
            )
        )
        return ReconcileResult(outcome=ReconcileOutcome.UPDATED, listing=updated)

    def _skip_grandfathered(self, listing: BusinessListing) -> ReconcileResult:
        logger.info("Listing %s is grandfathered; visibility left unchanged", listing.listing_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.GRANDFATHERED_SKIPPED,
                listing_id=listing.listing_id,
                subscription_id=listing.subscription_id,
            )
        )
        return ReconcileResult(outcome=ReconcileOutcome.SKIPPED_GRANDFATHERED, listing=listing)

    def _check_subscription(self, listing: BusinessListing, subscription_id: Optional[str]) -> None:
        if subscription_id and listing.subscription_id and listing.subscription_id != subscription_id:
            raise ConflictingSubscription(
                detail={
                    "listing_id": listing.listing_id,
                    "recorded_subscription_id": listing.subscription_id,
                    "received_subscription_id": subscription_id,
                }
            )


def _already_applied(
    listing: BusinessListing,
    visible: bool,
    subscription_id: Optional[str],
    customer_id: Optional[str],
) -> bool:
    return (
        listing.is_visible == visible
        and (subscription_id is None or listing.subscription_id == subscription_id)
        and (customer_id is None or listing.customer_id == customer_id)
    )


_TERMINAL_AUDIT_TYPES = {
    UnresolvableReference: BillingAuditEventType.REFERENCE_UNRESOLVED,
    ListingNotFound: BillingAuditEventType.LISTING_NOT_FOUND,
    ConflictingSubscription: BillingAuditEventType.SUBSCRIPTION_CONFLICT,
}


@dataclass
class SubscriptionService:
    """Coordinates webhooks, cancellations and checkout for listings."""

    repository: ListingRepository
    provider: BillingProvider
    event_logger: BillingEventLogger
    config: BillingConfig

    @property
    def reconciler(self) -> VisibilityReconciler:
        return VisibilityReconciler(repository=self.repository, event_logger=self.event_logger)

    @property
    def payment_failure_policy(self) -> PaymentFailurePolicy:
        return self.config.payment_failure_policy

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookReceipt:
        event = self.provider.parse_webhook(payload, signature)
        if event is None:
            return WebhookReceipt(outcome=WebhookOutcome.IGNORED, reason="unhandled_event_type")
        return self.process_event(event)

    def process_event(self, event: BillingEvent) -> WebhookReceipt:
        """Apply a verified event. Retryable upstream errors propagate to the caller."""

        try:
            instruction = classify_event(event, provider=self.provider, policy=self.payment_failure_policy)
            if instruction is None:
                logger.info(
                    "Event %s (%s) leaves visibility unchanged under %s policy",
                    event.event_id,
                    event.event_type.value,
                    self.payment_failure_policy.value,
                )
                return WebhookReceipt(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    outcome=WebhookOutcome.IGNORED,
                    reason="policy",
                )
            result = self.reconciler.apply(instruction)
        except TerminalEventError as exc:
            self._report_dropped(event, exc)
            return WebhookReceipt(
                event_id=event.event_id,
                event_type=event.event_type,
                outcome=WebhookOutcome.DROPPED,
                reason=exc.code,
            )

        return WebhookReceipt(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=WebhookOutcome.APPLIED,
            reconcile=result,
        )

    def cancel_subscription(
        self,
        listing_id: str,
        *,
        user_id: str,
        mode: CancellationMode,
    ) -> CancellationResult:
        listing = self._owned_listing(listing_id, user_id)
        if not listing.subscription_id:
            raise NoSubscriptionLinked(detail={"listing_id": listing_id})

        if mode == CancellationMode.END_OF_PERIOD:
            subscription = self.provider.schedule_cancellation(listing.subscription_id)
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.CANCELLATION_SCHEDULED,
                    listing_id=listing_id,
                    subscription_id=subscription.subscription_id,
                    actor_id=user_id,
                )
            )
            return CancellationResult(listing_id=listing_id, mode=mode, subscription=subscription)

        subscription = self.provider.cancel_subscription(listing.subscription_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                listing_id=listing_id,
                subscription_id=subscription.subscription_id,
                actor_id=user_id,
            )
        )
        result = self.reconciler.reconcile(
            listing_id,
            False,
            subscription_id=listing.subscription_id,
        )
        return CancellationResult(
            listing_id=listing_id,
            mode=mode,
            subscription=subscription,
            is_visible=result.listing.is_visible,
        )

    def create_checkout_session(self, listing_id: str, *, user_id: str, plan_type: str) -> str:
        self._owned_listing(listing_id, user_id)
        price_id = self.config.price_for(plan_type)
        if not price_id:
            variable = "STRIPE_PRICE_YEARLY" if plan_type == "yearly" else "STRIPE_PRICE_MONTHLY"
            raise MissingConfiguration(message=f"Price id is not configured: {variable}")

        base_url = self.config.app_base_url
        encoded_id = quote(listing_id, safe="")
        session = self.provider.create_checkout_session(
            price_id=price_id,
            listing_id=listing_id,
            success_url=f"{base_url}/meu-negocio?subscription=success&negocioId={encoded_id}",
            cancel_url=f"{base_url}/pagamento-assinatura?negocioId={encoded_id}&canceled=1",
        )
        return str(session.get("url") or "")

    def create_portal_session(self, listing_id: str, *, user_id: str) -> str:
        listing = self._owned_listing(listing_id, user_id)
        if not listing.customer_id:
            raise NoCustomerLinked(detail={"listing_id": listing_id})
        session = self.provider.create_billing_portal_session(
            customer_id=listing.customer_id,
            return_url=f"{self.config.app_base_url}/meus-negocios",
        )
        return str(session.get("url") or "")

    def _owned_listing(self, listing_id: str, user_id: str) -> BusinessListing:
        listing = self.repository.get_listing(listing_id)
        if listing is None:
            raise ListingNotFound(detail={"listing_id": listing_id})
        if listing.owner_id != user_id:
            raise Forbidden()
        return listing

    def _report_dropped(self, event: BillingEvent, exc: TerminalEventError) -> None:
        logger.warning(
            "Dropping billing event %s (%s): %s",
            event.event_id,
            event.event_type.value,
            exc.code,
            extra={"billing_event_id": event.event_id, "billing_error": exc.code},
        )
        audit_type = _TERMINAL_AUDIT_TYPES.get(type(exc))
        if audit_type is None:
            return
        metadata = {str(key): str(value) for key, value in (exc.detail or {}).items()}
        self.event_logger.log(
            BillingAuditEvent(
                event_type=audit_type,
                listing_id=metadata.get("listing_id") or event.listing_ref,
                subscription_id=event.subscription_id,
                metadata={"event_id": event.event_id, **metadata},
            )
        )


__all__ = [
    "BillingEventLogger",
    "BillingProvider",
    "ListingRepository",
    "SubscriptionService",
    "VisibilityReconciler",
]
