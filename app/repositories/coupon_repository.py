from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from app.models.coupon import Coupon, CouponUsage


class CouponRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, coupon_id: int) -> Optional[Coupon]:
        return self.db.query(Coupon).filter(Coupon.id == coupon_id).first()

    def get_by_code(self, code: str) -> Optional[Coupon]:
        if not code:
            return None
        return self.db.query(Coupon).filter(Coupon.code == code.strip()).first()

    def list(
        self,
        status: Optional[str] = None,
        coupon_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Coupon]:
        query = self.db.query(Coupon)
        if status == "active":
            query = query.filter(Coupon.is_active.is_(True))
        elif status == "inactive":
            query = query.filter(Coupon.is_active.is_(False))
        elif status == "expired":
            query = query.filter(Coupon.valid_until < now)
        elif status == "valid":
            query = query.filter(
                Coupon.is_active.is_(True),
                or_(Coupon.valid_from.is_(None), Coupon.valid_from <= now),
                or_(Coupon.valid_until.is_(None), Coupon.valid_until >= now),
            )
        if coupon_type:
            query = query.filter(Coupon.type == coupon_type)
        return query.order_by(Coupon.id.desc()).all()

    def add(self, coupon: Coupon) -> Coupon:
        self.db.add(coupon)
        self.db.flush()
        return coupon

    def delete(self, coupon: Coupon) -> None:
        self.db.delete(coupon)
        self.db.flush()

    def count_usages_by_user(self, coupon_id: int, user_id: int) -> int:
        return (
            self.db.query(func.count(CouponUsage.id))
            .filter(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
            .scalar()
        ) or 0

    def user_has_first_time_usage(self, user_id: int) -> bool:
        """True when the user already redeemed any first_time_only coupon."""
        return (
            self.db.query(CouponUsage.id)
            .join(Coupon, Coupon.id == CouponUsage.coupon_id)
            .filter(CouponUsage.user_id == user_id, Coupon.first_time_only.is_(True))
            .first()
        ) is not None

    def count_usages(self, coupon_id: int) -> int:
        return (
            self.db.query(func.count(CouponUsage.id))
            .filter(CouponUsage.coupon_id == coupon_id)
            .scalar()
        ) or 0

    def total_discount(self, coupon_id: int) -> Decimal:
        total = (
            self.db.query(func.sum(CouponUsage.discount_amount))
            .filter(CouponUsage.coupon_id == coupon_id)
            .scalar()
        )
        return Decimal(str(total or 0))

    def recent_usages(self, coupon_id: int, limit: int = 10) -> List[CouponUsage]:
        return (
            self.db.query(CouponUsage)
            .filter(CouponUsage.coupon_id == coupon_id)
            .order_by(CouponUsage.id.desc())
            .limit(limit)
            .all()
        )

    def increment_used_count(self, coupon_id: int) -> bool:
        """Atomically bump used_count unless the global cap has been reached."""
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def add_usage(self, usage: CouponUsage) -> CouponUsage:
        self.db.add(usage)
        self.db.flush()
        return usage

    def list_usages(
        self,
        coupon_id: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 15,
        offset: int = 0,
    ) -> List[CouponUsage]:
        query = self.db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon_id)
        if date_from is not None:
            query = query.filter(CouponUsage.used_at >= date_from)
        if date_to is not None:
            query = query.filter(CouponUsage.used_at <= date_to)
        return query.order_by(CouponUsage.id.desc()).offset(offset).limit(limit).all()

    def count_coupons(self, active_only: bool = False, expired_at: Optional[datetime] = None) -> int:
        query = self.db.query(func.count(Coupon.id))
        if active_only:
            query = query.filter(Coupon.is_active.is_(True))
        if expired_at is not None:
            query = query.filter(Coupon.valid_until < expired_at)
        return query.scalar() or 0

    def count_all_usages(self) -> int:
        return self.db.query(func.count(CouponUsage.id)).scalar() or 0

    def total_discount_all(self) -> Decimal:
        total = self.db.query(func.sum(CouponUsage.discount_amount)).scalar()
        return Decimal(str(total or 0))

    def most_used(self, limit: int = 5) -> List[Tuple[Coupon, int]]:
        usage_count = func.count(CouponUsage.id)
        return (
            self.db.query(Coupon, usage_count)
            .outerjoin(CouponUsage, CouponUsage.coupon_id == Coupon.id)
            .group_by(Coupon.id)
            .order_by(usage_count.desc(), Coupon.id)
            .limit(limit)
            .all()
        )

    def type_breakdown(self) -> List[Tuple[str, int, int]]:
        return (
            self.db.query(Coupon.type, func.count(Coupon.id), func.coalesce(func.sum(Coupon.used_count), 0))
            .group_by(Coupon.type)
            .order_by(Coupon.type)
            .all()
        )
