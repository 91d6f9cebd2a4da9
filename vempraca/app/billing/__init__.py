"""Billing domain package keeping listing visibility in line with subscriptions."""

from .classifier import classify_event, decide_visibility
from .config import BillingConfig, load_billing_config
from .exceptions import (
    BillingError,
    ConflictingSubscription,
    Forbidden,
    InvalidPayload,
    InvalidSignature,
    ListingNotFound,
    MissingConfiguration,
    NoCustomerLinked,
    NoSubscriptionLinked,
    ProviderRejected,
    TerminalEventError,
    Unauthorized,
    UnresolvableReference,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventType,
    BusinessListing,
    CancellationMode,
    CancellationResult,
    PaymentFailurePolicy,
    ProviderSubscription,
    ReconcileOutcome,
    ReconcileResult,
    SubscriptionStatus,
    VisibilityInstruction,
    WebhookOutcome,
    WebhookReceipt,
)
from .service import (
    BillingEventLogger,
    BillingProvider,
    ListingRepository,
    SubscriptionService,
    VisibilityReconciler,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfig",
    "BillingError",
    "BillingEvent",
    "BillingEventLogger",
    "BillingEventType",
    "BillingProvider",
    "BusinessListing",
    "CancellationMode",
    "CancellationResult",
    "ConflictingSubscription",
    "Forbidden",
    "InvalidPayload",
    "InvalidSignature",
    "ListingNotFound",
    "ListingRepository",
    "MissingConfiguration",
    "NoCustomerLinked",
    "NoSubscriptionLinked",
    "PaymentFailurePolicy",
    "ProviderRejected",
    "ProviderSubscription",
    "ReconcileOutcome",
    "ReconcileResult",
    "SubscriptionService",
    "SubscriptionStatus",
    "TerminalEventError",
    "Unauthorized",
    "UnresolvableReference",
    "UpstreamTimeout",
    "UpstreamUnavailable",
    "VisibilityInstruction",
    "VisibilityReconciler",
    "WebhookOutcome",
    "WebhookReceipt",
    "classify_event",
    "decide_visibility",
    "load_billing_config",
]
