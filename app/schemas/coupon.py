from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from app.models.coupon import CouponType


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    plan: Optional[str] = None


class CouponSummary(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    type: CouponType
    value: Decimal

    class Config:
        from_attributes = True


class CouponValidateResponse(BaseModel):
    coupon: CouponSummary
    discount_amount: Decimal
    final_amount: Decimal


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str
    description: Optional[str] = None
    type: CouponType
    value: Decimal = Field(..., ge=0)
    minimum_amount: Optional[Decimal] = Field(None, ge=0)
    maximum_discount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_limit_per_user: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    applicable_plans: Optional[List[str]] = None
    first_time_only: bool = False


class CouponResponse(CouponCreate):
    id: int
    used_count: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CouponUsageResponse(BaseModel):
    id: int
    user_id: int
    amount: Decimal
    discount_amount: Decimal
    used_at: datetime

    class Config:
        from_attributes = True


class CouponStatisticsResponse(BaseModel):
    coupon_id: int
    total_usage: int
    total_discount_given: Decimal
    recent_usage: List[CouponUsageResponse]


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[CouponType] = None
    value: Optional[Decimal] = Field(None, ge=0)
    minimum_amount: Optional[Decimal] = Field(None, ge=0)
    maximum_discount: Optional[Decimal] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    usage_limit_per_user: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None
    applicable_plans: Optional[List[str]] = None
    first_time_only: Optional[bool] = None


class MostUsedCoupon(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    usage_count: int


class CouponTypeBreakdown(BaseModel):
    type: str
    count: int
    total_usage: int


class CouponOverallStatisticsResponse(BaseModel):
    total_coupons: int
    active_coupons: int
    expired_coupons: int
    total_usage: int
    total_discount_given: Decimal
    most_used_coupons: List[MostUsedCoupon]
    coupon_types_breakdown: List[CouponTypeBreakdown]
