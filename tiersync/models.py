from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

class CheckoutSessionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    uid: str = Field(min_length=1, validation_alias=AliasChoices("uid", "user_id"))
    email: str = Field(min_length=3)

class CheckoutSessionResp(BaseModel):
    session_id: str
    url: Optional[str] = None

class PortalSessionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    uid: str = Field(min_length=1, validation_alias=AliasChoices("uid", "user_id"))

class PortalSessionResp(BaseModel):
    url: str

class EntitlementOut(BaseModel):
    user_id: str
    tier: str = "free"
    tier_status: Optional[str] = None
    tier_since: Optional[int] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    last_reconciled_at: Optional[int] = None

class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    event_id: Optional[str] = None
    reason: Optional[str] = None
