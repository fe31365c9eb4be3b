from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.v1.dependencies import require_admin
from app.db.session import get_db
from app.models.user import User
from app.repositories.coupon_repository import CouponRepository
from app.repositories.payment_transaction_repository import PaymentTransactionRepository
from app.repositories.plan_repository import SubscriptionPlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.coupon import (
    CouponCreate,
    CouponOverallStatisticsResponse,
    CouponResponse,
    CouponStatisticsResponse,
    CouponUpdate,
    CouponUsageResponse,
)
from app.schemas.payment import (
    PaymentStatisticsResponse,
    PaymentTransactionResponse,
    PaymentTransactionUpdate,
)
from app.schemas.subscription import (
    CancelSubscriptionRequest,
    PlanAdminResponse,
    PlanCreate,
    PlanStatisticsResponse,
    PlanUpdate,
    SetPriceIdRequest,
    SubscriptionResponse,
)
from app.services.coupon_service import CouponService
from app.services.payment_ledger import PaymentLedger
from app.services.plan_catalog import PlanCatalog
from app.services.subscription_service import SubscriptionStateMachine

router = APIRouter(tags=["admin"])

# Columns an update may clear by sending null
COUPON_NULLABLE_FIELDS = {
    "description",
    "minimum_amount",
    "maximum_discount",
    "usage_limit",
    "usage_limit_per_user",
    "valid_from",
    "valid_until",
    "applicable_plans",
}
PLAN_NULLABLE_FIELDS = {"display_name", "description", "external_price_id"}


def _changes(payload, nullable: set) -> dict:
    fields = payload.model_dump(exclude_unset=True)
    return {key: value for key, value in fields.items() if value is not None or key in nullable}


# Subscriptions

@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: int,
    payload: Optional[CancelSubscriptionRequest] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    service = SubscriptionStateMachine(SubscriptionRepository(db))
    return service.cancel_by_admin(subscription_id, payload.reason if payload else None)


# Plans

def _catalog(db: Session) -> PlanCatalog:
    return PlanCatalog(SubscriptionPlanRepository(db))


@router.get("/plans", response_model=List[PlanAdminResponse])
def list_plans(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _catalog(db).list_all()


@router.post("/plans", response_model=PlanAdminResponse, status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _catalog(db).create(**payload.model_dump())


@router.get("/plans/{plan_id}", response_model=PlanAdminResponse)
def get_plan(plan_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _catalog(db).get(plan_id)


@router.put("/plans/{plan_id}", response_model=PlanAdminResponse)
def update_plan(
    plan_id: int,
    payload: PlanUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _catalog(db).update(plan_id, **_changes(payload, PLAN_NULLABLE_FIELDS))


@router.put("/plans/{plan_id}/price-id", response_model=PlanAdminResponse)
def set_plan_price_id(
    plan_id: int,
    payload: SetPriceIdRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _catalog(db).set_external_price_id(plan_id, payload.price_id)


@router.post("/plans/{plan_id}/toggle-status", response_model=PlanAdminResponse)
def toggle_plan_status(plan_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _catalog(db).toggle_status(plan_id)


@router.delete("/plans/{plan_id}")
def delete_plan(plan_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    _catalog(db).delete(plan_id)
    return {"success": True, "message": "Subscription plan deleted successfully"}


@router.get("/plans/{plan_id}/statistics", response_model=PlanStatisticsResponse)
def plan_statistics(plan_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _catalog(db).statistics(plan_id)


# Payments

def _ledger(db: Session) -> PaymentLedger:
    return PaymentLedger(PaymentTransactionRepository(db))


@router.get("/payments", response_model=List[PaymentTransactionResponse])
def list_payments(
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[int] = Query(None),
    subscription_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _ledger(db).list(
        status=status_filter,
        user_id=user_id,
        subscription_id=subscription_id,
        limit=limit,
        offset=offset,
    )


@router.get("/payments/statistics", response_model=PaymentStatisticsResponse)
def payment_statistics(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _ledger(db).statistics()


@router.get("/payments/{transaction_id}", response_model=PaymentTransactionResponse)
def get_payment(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _ledger(db).get(transaction_id)


@router.put("/payments/{transaction_id}", response_model=PaymentTransactionResponse)
def update_payment(
    transaction_id: int,
    payload: PaymentTransactionUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _ledger(db).update(transaction_id, status=payload.status, notes=payload.notes)


@router.post("/payments/{transaction_id}/mark-completed", response_model=PaymentTransactionResponse)
def mark_payment_completed(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _ledger(db).mark_completed(transaction_id)


@router.post("/payments/{transaction_id}/mark-failed", response_model=PaymentTransactionResponse)
def mark_payment_failed(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _ledger(db).mark_failed(transaction_id)


@router.post("/payments/{transaction_id}/refund", response_model=PaymentTransactionResponse)
def refund_payment(transaction_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _ledger(db).refund(transaction_id)


# Coupons

def _coupons(db: Session) -> CouponService:
    return CouponService(CouponRepository(db))


@router.get("/coupons", response_model=List[CouponResponse])
def list_coupons(
    status_filter: Optional[str] = Query(None, alias="status"),
    coupon_type: Optional[str] = Query(None, alias="type"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _coupons(db).list(status=status_filter, coupon_type=coupon_type)


@router.post("/coupons", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
def create_coupon(payload: CouponCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    fields = payload.model_dump()
    fields["type"] = payload.type.value
    return _coupons(db).create(**fields)


@router.get("/coupons/statistics", response_model=CouponOverallStatisticsResponse)
def overall_coupon_statistics(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _coupons(db).overall_statistics()


@router.get("/coupons/{coupon_id}", response_model=CouponResponse)
def get_coupon(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _coupons(db).get(coupon_id)


@router.put("/coupons/{coupon_id}", response_model=CouponResponse)
def update_coupon(
    coupon_id: int,
    payload: CouponUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    fields = _changes(payload, COUPON_NULLABLE_FIELDS)
    if payload.type is not None:
        fields["type"] = payload.type.value
    return _coupons(db).update(coupon_id, **fields)


@router.post("/coupons/{coupon_id}/toggle-status", response_model=CouponResponse)
def toggle_coupon_status(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _coupons(db).toggle_status(coupon_id)


@router.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    _coupons(db).delete(coupon_id)
    return {"success": True, "message": "Coupon deleted successfully"}


@router.get("/coupons/{coupon_id}/usage", response_model=List[CouponUsageResponse])
def coupon_usage(
    coupon_id: int,
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(15, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _coupons(db).usage(coupon_id, date_from=date_from, date_to=date_to, limit=limit, offset=offset)


@router.get("/coupons/{coupon_id}/statistics", response_model=CouponStatisticsResponse)
def coupon_statistics(coupon_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _coupons(db).statistics(coupon_id)
