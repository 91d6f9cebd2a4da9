from __future__ import annotations

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
import stripe

from vempraca.app.billing import (
    BillingConfig,
    BillingEventType,
    InvalidPayload,
    InvalidSignature,
    MissingConfiguration,
    PaymentFailurePolicy,
    ProviderRejected,
    SubscriptionStatus,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from vempraca.app.billing.stripe_provider import (
    StripeBillingProvider,
    billing_event_from_stripe,
    parse_stripe_webhook,
    subscription_from_stripe,
)

WEBHOOK_SECRET = "whsec_test_secret"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _event_payload(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": 1_700_000_000,
            "data": {"object": obj},
        }
    ).encode("utf-8")


def _config(**overrides) -> BillingConfig:
    values = dict(
        billing_secret_key="sk_test_123",
        webhook_signing_secret=WEBHOOK_SECRET,
        sandbox_mode=True,
        api_version=None,
        provider_timeout_seconds=5.0,
        provider_max_network_retries=0,
        payment_failure_policy=PaymentFailurePolicy.PESSIMISTIC,
        price_monthly="price_monthly",
        price_yearly="price_yearly",
        app_base_url="https://vempraca.test",
    )
    values.update(overrides)
    return BillingConfig(**values)


def test_signed_checkout_event_is_normalized():
    payload = _event_payload(
        "checkout.session.completed",
        {
            "id": "cs_1",
            "object": "checkout.session",
            "subscription": "sub_1",
            "customer": "cus_1",
            "metadata": {"negocioId": "L1"},
        },
    )

    event = parse_stripe_webhook(payload, _sign(payload), webhook_secret=WEBHOOK_SECRET)

    assert event is not None
    assert event.event_id == "evt_1"
    assert event.event_type == BillingEventType.CHECKOUT_COMPLETED
    assert event.subscription_id == "sub_1"
    assert event.customer_id == "cus_1"
    assert event.listing_ref == "L1"
    assert event.occurred_at.year == 2023


def test_tampered_payload_is_rejected():
    payload = _event_payload("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})
    signature = _sign(payload)
    tampered = payload.replace(b"sub_1", b"sub_2")

    with pytest.raises(InvalidSignature):
        parse_stripe_webhook(tampered, signature, webhook_secret=WEBHOOK_SECRET)


def test_signature_from_another_secret_is_rejected():
    payload = _event_payload("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})

    with pytest.raises(InvalidSignature):
        parse_stripe_webhook(payload, _sign(payload, secret="whsec_other"), webhook_secret=WEBHOOK_SECRET)


def test_missing_signature_header_is_rejected():
    payload = _event_payload("invoice.payment_failed", {"id": "in_1"})

    with pytest.raises(InvalidSignature):
        parse_stripe_webhook(payload, None, webhook_secret=WEBHOOK_SECRET)


def test_missing_webhook_secret_is_a_configuration_error():
    payload = _event_payload("invoice.payment_failed", {"id": "in_1"})

    with pytest.raises(MissingConfiguration):
        parse_stripe_webhook(payload, _sign(payload), webhook_secret=None)


def test_signed_garbage_is_an_invalid_payload():
    payload = b"not json"

    with pytest.raises(InvalidPayload):
        parse_stripe_webhook(payload, _sign(payload), webhook_secret=WEBHOOK_SECRET)


def test_subscription_event_without_status_reads_as_unknown():
    payload = _event_payload(
        "customer.subscription.updated",
        {"id": "sub_1", "object": "subscription", "status": None, "metadata": {"negocioId": "L1"}},
    )

    event = parse_stripe_webhook(payload, _sign(payload), webhook_secret=WEBHOOK_SECRET)

    # A missing status is reported as unknown, which is never in good standing.
    assert event.status == SubscriptionStatus.UNKNOWN


def test_unhandled_event_types_map_to_none():
    assert billing_event_from_stripe({"id": "evt_x", "type": "customer.created", "data": {"object": {}}}) is None


@pytest.mark.parametrize(
    ("stripe_type", "expected_type"),
    [
        ("customer.subscription.created", BillingEventType.SUBSCRIPTION_UPDATED),
        ("customer.subscription.updated", BillingEventType.SUBSCRIPTION_UPDATED),
        ("customer.subscription.deleted", BillingEventType.SUBSCRIPTION_DELETED),
    ],
)
def test_subscription_events_are_mapped(stripe_type, expected_type):
    event = billing_event_from_stripe(
        {
            "id": "evt_sub",
            "type": stripe_type,
            "data": {
                "object": {
                    "id": "sub_7",
                    "customer": {"id": "cus_7", "object": "customer"},
                    "status": "past_due",
                    "metadata": {"negocioId": "L7"},
                }
            },
        }
    )

    assert event.event_type == expected_type
    assert event.subscription_id == "sub_7"
    assert event.customer_id == "cus_7"
    assert event.status == SubscriptionStatus.PAST_DUE
    assert event.listing_ref == "L7"


def test_checkout_falls_back_to_client_reference_id():
    event = billing_event_from_stripe(
        {
            "id": "evt_cs",
            "type": "checkout.session.completed",
            "data": {"object": {"subscription": "sub_1", "client_reference_id": "L2", "metadata": {}}},
        }
    )

    assert event.listing_ref == "L2"


def test_legacy_invoice_shape_is_mapped():
    event = billing_event_from_stripe(
        {
            "id": "evt_in",
            "type": "invoice.payment_failed",
            "data": {
                "object": {
                    "id": "in_1",
                    "customer": "cus_1",
                    "subscription": "sub_1",
                    "subscription_details": {"metadata": {"negocioId": "L1"}},
                }
            },
        }
    )

    assert event.event_type == BillingEventType.INVOICE_PAYMENT_FAILED
    assert event.subscription_id == "sub_1"
    assert event.listing_ref == "L1"


def test_current_invoice_shape_is_mapped():
    event = billing_event_from_stripe(
        {
            "id": "evt_in2",
            "type": "invoice.payment_succeeded",
            "data": {
                "object": {
                    "id": "in_2",
                    "customer": "cus_2",
                    "parent": {
                        "type": "subscription_details",
                        "subscription_details": {"subscription": "sub_2", "metadata": {"negocioId": "L2"}},
                    },
                }
            },
        }
    )

    assert event.event_type == BillingEventType.INVOICE_PAYMENT_SUCCEEDED
    assert event.subscription_id == "sub_2"
    assert event.listing_ref == "L2"
    assert event.customer_id == "cus_2"


def test_invoice_without_metadata_leaves_reference_empty():
    event = billing_event_from_stripe(
        {"id": "evt_in3", "type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_3"}}}
    )

    assert event.subscription_id == "sub_3"
    assert event.listing_ref is None


def test_subscription_period_end_read_from_items():
    subscription = subscription_from_stripe(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": True,
            "items": {"data": [{"current_period_end": 1_700_000_000}]},
            "metadata": {"negocioId": "L1"},
        }
    )

    assert subscription.cancel_at_period_end is True
    assert subscription.current_period_end is not None
    assert subscription.current_period_end.year == 2023
    assert subscription.listing_ref == "L1"


class FakeSubscriptions:
    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_with: Exception | None = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def retrieve(self, subscription_id: str, params: Any = None, options: Any = None) -> Dict[str, Any]:
        self.calls.append(("retrieve", subscription_id))
        self._maybe_fail()
        if subscription_id not in self.records:
            raise stripe.InvalidRequestError("No such subscription", "id", http_status=404)
        return self.records[subscription_id]

    def cancel(self, subscription_id: str, params: Any = None, options: Any = None) -> Dict[str, Any]:
        self.calls.append(("cancel", subscription_id))
        self._maybe_fail()
        record = self.records[subscription_id]
        if record["status"] == "canceled":
            raise stripe.InvalidRequestError("Subscription is already canceled", "id", http_status=400)
        record = {**record, "status": "canceled"}
        self.records[subscription_id] = record
        return record

    def update(self, subscription_id: str, params: Any = None, options: Any = None) -> Dict[str, Any]:
        self.calls.append(("update", subscription_id, params))
        self._maybe_fail()
        record = {**self.records[subscription_id], **(params or {})}
        self.records[subscription_id] = record
        return record


class FakeSessions:
    def __init__(self, url: str) -> None:
        self.url = url
        self.params: List[Dict[str, Any]] = []

    def create(self, params: Any = None, options: Any = None) -> Dict[str, Any]:
        self.params.append(params)
        return {"id": "sess_1", "url": self.url}


@pytest.fixture
def stripe_client():
    subscriptions = FakeSubscriptions()
    subscriptions.records["sub_1"] = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": False,
        "metadata": {"negocioId": "L1"},
    }
    client = SimpleNamespace(
        v1=SimpleNamespace(
            subscriptions=subscriptions,
            checkout=SimpleNamespace(sessions=FakeSessions("https://checkout.stripe.test/s")),
            billing_portal=SimpleNamespace(sessions=FakeSessions("https://billing.stripe.test/p")),
        )
    )
    return client


def test_provider_requires_secret_key():
    with pytest.raises(MissingConfiguration):
        StripeBillingProvider(_config(billing_secret_key=None))


def test_retrieve_subscription(stripe_client):
    provider = StripeBillingProvider(_config(), client=stripe_client)

    subscription = provider.retrieve_subscription("sub_1")

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.listing_ref == "L1"
    assert provider.retrieve_subscription("sub_missing") is None


def test_cancel_twice_reports_canceled_subscription(stripe_client):
    provider = StripeBillingProvider(_config(), client=stripe_client)

    first = provider.cancel_subscription("sub_1")
    second = provider.cancel_subscription("sub_1")

    assert first.status == SubscriptionStatus.CANCELED
    assert second.status == SubscriptionStatus.CANCELED


def test_schedule_cancellation_sets_period_end_flag(stripe_client):
    provider = StripeBillingProvider(_config(), client=stripe_client)

    subscription = provider.schedule_cancellation("sub_1")

    assert subscription.cancel_at_period_end is True
    assert stripe_client.v1.subscriptions.calls[-1] == ("update", "sub_1", {"cancel_at_period_end": True})


def test_connection_timeout_maps_to_upstream_timeout(stripe_client):
    stripe_client.v1.subscriptions.fail_with = stripe.APIConnectionError("Request to Stripe timed out")
    provider = StripeBillingProvider(_config(), client=stripe_client)

    with pytest.raises(UpstreamTimeout) as exc:
        provider.cancel_subscription("sub_1")

    assert exc.value.retryable is True


def test_connection_failure_maps_to_upstream_unavailable(stripe_client):
    stripe_client.v1.subscriptions.fail_with = stripe.APIConnectionError("Connection refused")
    provider = StripeBillingProvider(_config(), client=stripe_client)

    with pytest.raises(UpstreamUnavailable) as exc:
        provider.retrieve_subscription("sub_1")

    assert not isinstance(exc.value, UpstreamTimeout)


def test_rate_limit_is_retryable(stripe_client):
    stripe_client.v1.subscriptions.fail_with = stripe.RateLimitError("Too many requests")
    provider = StripeBillingProvider(_config(), client=stripe_client)

    with pytest.raises(UpstreamUnavailable):
        provider.schedule_cancellation("sub_1")


def test_authentication_error_is_rejected_not_retried(stripe_client):
    stripe_client.v1.subscriptions.fail_with = stripe.AuthenticationError("Invalid API key")
    provider = StripeBillingProvider(_config(), client=stripe_client)

    with pytest.raises(ProviderRejected) as exc:
        provider.retrieve_subscription("sub_1")

    assert exc.value.retryable is False


def test_checkout_session_carries_listing_metadata(stripe_client):
    provider = StripeBillingProvider(_config(), client=stripe_client)

    session = provider.create_checkout_session(
        price_id="price_monthly",
        listing_id="L1",
        success_url="https://vempraca.test/ok",
        cancel_url="https://vempraca.test/cancel",
    )

    params = stripe_client.v1.checkout.sessions.params[0]
    assert session["url"] == "https://checkout.stripe.test/s"
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_monthly", "quantity": 1}]
    assert params["client_reference_id"] == "L1"
    assert params["metadata"] == {"negocioId": "L1"}
    assert params["subscription_data"] == {"metadata": {"negocioId": "L1"}}


def test_billing_portal_session(stripe_client):
    provider = StripeBillingProvider(_config(), client=stripe_client)

    session = provider.create_billing_portal_session(customer_id="cus_1", return_url="https://vempraca.test/back")

    assert session["url"] == "https://billing.stripe.test/p"
    assert stripe_client.v1.billing_portal.sessions.params[0] == {
        "customer": "cus_1",
        "return_url": "https://vempraca.test/back",
    }


@pytest.mark.parametrize(
    "session",
    [
        {"mode": "payment", "subscription": None, "metadata": {"negocioId": "L1"}},
        {"mode": "subscription", "metadata": {"negocioId": "L1"}},
    ],
)
def test_checkout_without_subscription_grants_nothing(session):
    event = billing_event_from_stripe(
        {"id": "evt_cs_pay", "type": "checkout.session.completed", "data": {"object": session}}
    )

    assert event is None
