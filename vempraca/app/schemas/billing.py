"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from ..billing import CancellationMode, CancellationResult

_FLAG = TypeAdapter(bool)


class CancelSubscriptionRequest(BaseModel):
    listing_id: str = Field(alias="negocioId", min_length=1)
    mode: CancellationMode = CancellationMode.END_OF_PERIOD

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _accept_immediate_flag(cls, data: Any) -> Any:
        if isinstance(data, dict) and "mode" not in data and "immediate" in data:
            data = dict(data)
            immediate = _FLAG.validate_python(data.pop("immediate"))
            data["mode"] = CancellationMode.IMMEDIATE if immediate else CancellationMode.END_OF_PERIOD
        return data


class SubscriptionState(BaseModel):
    id: str
    status: str
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None


class VisibilityState(BaseModel):
    is_visible: Optional[bool] = None


class CancelSubscriptionResponse(BaseModel):
    success: bool = True
    subscription: SubscriptionState
    visibility: VisibilityState
    message: str

    @classmethod
    def from_result(cls, result: CancellationResult) -> "CancelSubscriptionResponse":
        if result.mode == CancellationMode.IMMEDIATE:
            message = "Subscription canceled immediately."
            if result.is_visible is False:
                message = "Subscription canceled immediately and the listing is no longer visible."
        else:
            message = "Cancellation scheduled for the end of the billing period; the listing stays visible until then."
        return cls(
            subscription=SubscriptionState(
                id=result.subscription.subscription_id,
                status=result.subscription.status.value,
                cancel_at_period_end=result.subscription.cancel_at_period_end,
                current_period_end=result.subscription.current_period_end,
            ),
            visibility=VisibilityState(is_visible=result.is_visible),
            message=message,
        )


class CheckoutRequest(BaseModel):
    plan_type: Literal["monthly", "yearly"] = Field(alias="planType")
    listing_id: str = Field(alias="negocioId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalRequest(BaseModel):
    listing_id: str = Field(alias="negocioId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class SessionUrlResponse(BaseModel):
    url: str
