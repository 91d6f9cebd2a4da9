"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from .models import PaymentFailurePolicy


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing provider integration."""

    billing_secret_key: Optional[str]
    webhook_signing_secret: Optional[str]
    sandbox_mode: bool
    api_version: Optional[str]
    provider_timeout_seconds: float
    provider_max_network_retries: int
    payment_failure_policy: PaymentFailurePolicy
    price_monthly: Optional[str]
    price_yearly: Optional[str]
    app_base_url: str

    def price_for(self, plan_type: str) -> Optional[str]:
        """Return the provider price id configured for ``plan_type``."""

        return self.price_yearly if plan_type == "yearly" else self.price_monthly


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_policy(value: Optional[str]) -> PaymentFailurePolicy:
    if not value:
        return PaymentFailurePolicy.PESSIMISTIC
    try:
        return PaymentFailurePolicy(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown payment failure policy {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    webhook_secret = (env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip() or None
    sandbox_mode = _to_bool(env_mapping.get("BILLING_SANDBOX_MODE"), default=False)

    if secret_key:
        if sandbox_mode and secret_key.startswith("sk_live_"):
            raise ValueError("BILLING_SANDBOX_MODE is enabled but STRIPE_SECRET_KEY is a live key")
        if not sandbox_mode and secret_key.startswith("sk_test_"):
            raise ValueError("STRIPE_SECRET_KEY is a test key; set BILLING_SANDBOX_MODE=1 to use it")

    timeout_seconds = _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=10.0)
    if timeout_seconds <= 0:
        raise ValueError("STRIPE_TIMEOUT_SECONDS must be positive")

    return BillingConfig(
        billing_secret_key=secret_key,
        webhook_signing_secret=webhook_secret,
        sandbox_mode=sandbox_mode,
        api_version=env_mapping.get("STRIPE_API_VERSION") or None,
        provider_timeout_seconds=timeout_seconds,
        provider_max_network_retries=max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=1)),
        payment_failure_policy=_to_policy(env_mapping.get("BILLING_PAYMENT_FAILURE_POLICY")),
        price_monthly=env_mapping.get("STRIPE_PRICE_MONTHLY") or None,
        price_yearly=env_mapping.get("STRIPE_PRICE_YEARLY") or None,
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
    )
