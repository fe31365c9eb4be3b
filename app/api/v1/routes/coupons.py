from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_current_user_optional
from app.db.session import get_db
from app.models.user import User
from app.repositories.coupon_repository import CouponRepository
from app.schemas.coupon import CouponValidateRequest, CouponValidateResponse
from app.services.coupon_service import CouponService

router = APIRouter(tags=["coupons"])


@router.post("/validate", response_model=CouponValidateResponse)
def validate_coupon(
    payload: CouponValidateRequest,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: Session = Depends(get_db),
):
    """Preview the discount a coupon gives on an amount. Does not redeem it."""
    service = CouponService(CouponRepository(db))
    return service.validate_code(
        payload.code.strip(),
        payload.amount,
        plan_name=payload.plan,
        user_id=current_user.id if current_user else None,
    )
