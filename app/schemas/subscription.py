from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional


class PlanResponse(BaseModel):
    """Public view of a subscription plan."""
    id: int
    name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    price: Decimal
    currency: str
    duration_days: int
    sort_order: int = 0

    class Config:
        from_attributes = True


class PlansResponse(BaseModel):
    plans: List[PlanResponse]


class SubscriptionStatusResponse(BaseModel):
    has_subscription: bool
    is_entitled: bool
    subscription_id: Optional[int] = None
    status: Optional[str] = None
    plan: Optional[str] = None
    expires_at: Optional[str] = None
    auto_renew: Optional[bool] = None


class SubscriptionResponse(BaseModel):
    id: int
    user_id: int
    plan_id: int
    status: str
    external_subscription_id: Optional[str] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    amount: Optional[Decimal] = None
    auto_renew: bool
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class SetPriceIdRequest(BaseModel):
    price_id: str


class PlanAdminResponse(PlanResponse):
    external_price_id: Optional[str] = None
    is_active: bool


class PlanCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    display_name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    currency: str = Field("EUR", min_length=3, max_length=3)
    duration_days: int = Field(30, ge=1)
    external_price_id: Optional[str] = Field(None, max_length=255)
    is_active: bool = True
    sort_order: int = Field(0, ge=0)


class PlanUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=64)
    display_name: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    duration_days: Optional[int] = Field(None, ge=1)
    external_price_id: Optional[str] = Field(None, max_length=255)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = Field(None, ge=0)


class PlanStatisticsResponse(BaseModel):
    plan_id: int
    total_subscriptions: int
    active_subscriptions: int
    expired_subscriptions: int
    cancelled_subscriptions: int
    pending_subscriptions: int
    total_revenue: Decimal
