"""API routes exposing Stripe subscription functionality."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ...app_context import get_current_user
from ..billing import BillingError, InvalidPayload, InvalidSignature, WebhookReceipt
from ..schemas.billing import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CheckoutRequest,
    PortalRequest,
    SessionUrlResponse,
)
from ..services.billing import get_subscription_service

logger = logging.getLogger(__name__)


def _get_current_user(authorization: Optional[str] = Header(None)):
    return get_current_user(authorization=authorization)


router = APIRouter(prefix="/api/stripe", tags=["billing"])


@router.post("/webhook", response_model=WebhookReceipt)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookReceipt:
    payload = await request.body()
    try:
        service = get_subscription_service()
        receipt = await run_in_threadpool(service.handle_webhook, payload, stripe_signature)
    except (InvalidSignature, InvalidPayload) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from exc
    except BillingError as exc:
        logger.error("Stripe webhook failed (%s); provider will redeliver", exc.code)
        raise exc.to_http_exception() from exc

    logger.info(
        "Stripe webhook %s handled: %s",
        receipt.event_id or "-",
        receipt.outcome.value,
        extra={"billing_event_id": receipt.event_id, "billing_outcome": receipt.outcome.value},
    )
    return receipt


@router.post("/subscription/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    payload: CancelSubscriptionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CancelSubscriptionResponse:
    try:
        service = get_subscription_service()
        result = service.cancel_subscription(
            payload.listing_id,
            user_id=str(current_user.id),
            mode=payload.mode,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CancelSubscriptionResponse.from_result(result)


@router.post("/checkout", response_model=SessionUrlResponse)
def create_checkout_session(
    payload: CheckoutRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SessionUrlResponse:
    try:
        service = get_subscription_service()
        url = service.create_checkout_session(
            payload.listing_id,
            user_id=str(current_user.id),
            plan_type=payload.plan_type,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SessionUrlResponse(url=url)


@router.post("/portal", response_model=SessionUrlResponse)
def create_portal_session(
    payload: PortalRequest,
    *,
    current_user=Depends(_get_current_user),
) -> SessionUrlResponse:
    try:
        service = get_subscription_service()
        url = service.create_portal_session(payload.listing_id, user_id=str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SessionUrlResponse(url=url)
