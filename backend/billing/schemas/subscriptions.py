"""Pydantic schemas for subscriptions"""
from pydantic import BaseModel, Field
from typing import Optional


class ReturnUrls(BaseModel):
    success: Optional[str] = None
    cancel: Optional[str] = None


class CheckoutRequest(BaseModel):
    plan_type: str = Field(..., alias="planType", min_length=1)  # plan type ('monthly', 'annual') or plan UUID
    return_url: Optional[ReturnUrls] = Field(None, alias="returnUrl")


class PortalRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    return_url: Optional[str] = Field(None, alias="returnUrl")


class CancelRequest(BaseModel):
    subscription_id: str = Field(..., alias="subscriptionId", min_length=1)


class WebhookResponse(BaseModel):
    received: bool = True
    error: Optional[str] = None
