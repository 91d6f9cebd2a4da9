"""Error taxonomy for billing webhooks, reconciliation and cancellation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base class for billing failures surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        base: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base.update(self.detail)
        return base

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass(eq=False)
class InvalidSignature(BillingError):
    code: str = "invalid_signature"
    message: str = "Invalid signature"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class InvalidPayload(BillingError):
    code: str = "invalid_payload"
    message: str = "Invalid payload"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class TerminalEventError(BillingError):
    """Failure that ends processing of an event without asking for redelivery."""

    code: str = "terminal_event"
    message: str = "Event cannot be applied"
    status_code: int = 422


@dataclass(eq=False)
class UnresolvableReference(TerminalEventError):
    code: str = "unresolvable_reference"
    message: str = "Event carries no listing reference"


@dataclass(eq=False)
class ListingNotFound(TerminalEventError):
    code: str = "listing_not_found"
    message: str = "Listing not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class ConflictingSubscription(TerminalEventError):
    code: str = "conflicting_subscription"
    message: str = "Event subscription does not match the listing's subscription"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass(eq=False)
class UpstreamUnavailable(BillingError):
    code: str = "upstream_unavailable"
    message: str = "Upstream service unavailable"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable: bool = True


@dataclass(eq=False)
class UpstreamTimeout(UpstreamUnavailable):
    code: str = "upstream_timeout"
    message: str = "Upstream service timed out"
    status_code: int = status.HTTP_504_GATEWAY_TIMEOUT


@dataclass(eq=False)
class ProviderRejected(BillingError):
    code: str = "provider_rejected"
    message: str = "Billing provider rejected the request"
    status_code: int = status.HTTP_502_BAD_GATEWAY


@dataclass(eq=False)
class Unauthorized(BillingError):
    code: str = "unauthorized"
    message: str = "Not authenticated"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass(eq=False)
class Forbidden(BillingError):
    code: str = "forbidden"
    message: str = "You do not own this listing"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass(eq=False)
class NoSubscriptionLinked(BillingError):
    code: str = "no_subscription"
    message: str = "No subscription is linked to this listing"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class NoCustomerLinked(BillingError):
    code: str = "no_customer"
    message: str = "No billing customer is linked to this listing"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass(eq=False)
class MissingConfiguration(BillingError):
    code: str = "missing_configuration"
    message: str = "Billing is not configured"


__all__ = [
    "BillingError",
    "ConflictingSubscription",
    "Forbidden",
    "InvalidPayload",
    "InvalidSignature",
    "ListingNotFound",
    "MissingConfiguration",
    "NoCustomerLinked",
    "NoSubscriptionLinked",
    "ProviderRejected",
    "TerminalEventError",
    "Unauthorized",
    "UnresolvableReference",
    "UpstreamTimeout",
    "UpstreamUnavailable",
]
