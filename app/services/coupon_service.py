import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.core.errors import CouponExhausted, LookupMiss, ValidationError
from app.models.coupon import Coupon, CouponType, CouponUsage
from app.repositories.coupon_repository import CouponRepository
from app.utils.money import quantize_money, to_decimal
from app.utils.serialization import as_utc, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class CouponService:
    """Coupon eligibility, discount math and redemption."""

    def __init__(self, repo: CouponRepository):
        self.repo = repo

    def is_valid(self, coupon: Coupon, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if not coupon.is_active:
            return False
        valid_from = as_utc(coupon.valid_from)
        if valid_from is not None and valid_from > now:
            return False
        valid_until = as_utc(coupon.valid_until)
        if valid_until is not None and valid_until < now:
            return False
        if coupon.usage_limit is not None and (coupon.used_count or 0) >= coupon.usage_limit:
            return False
        return True

    def can_be_used_by(self, coupon: Coupon, user_id: int, now: Optional[datetime] = None) -> bool:
        if not self.is_valid(coupon, now):
            return False

        if coupon.usage_limit_per_user is not None:
            used = self.repo.count_usages_by_user(coupon.id, user_id)
            if used >= coupon.usage_limit_per_user:
                return False

        if coupon.first_time_only and self.repo.user_has_first_time_usage(user_id):
            return False

        return True

    def calculate_discount(self, coupon: Coupon, amount: Decimal, now: Optional[datetime] = None) -> Decimal:
        amount = to_decimal(amount) or ZERO
        if not self.is_valid(coupon, now):
            return ZERO

        minimum = to_decimal(coupon.minimum_amount)
        if minimum is not None and amount < minimum:
            return ZERO

        value = to_decimal(coupon.value) or ZERO
        if coupon.type == CouponType.PERCENTAGE:
            discount = amount * value / Decimal(100)
        elif coupon.type == CouponType.FIXED_AMOUNT:
            discount = value
        elif coupon.type == CouponType.FREE_TRIAL:
            discount = amount
        else:
            logger.warning(f"Coupon {coupon.code} has unknown type {coupon.type!r}")
            discount = ZERO

        maximum = to_decimal(coupon.maximum_discount)
        if maximum is not None and discount > maximum:
            discount = maximum

        return quantize_money(min(discount, amount))

    @staticmethod
    def applies_to_plan(coupon: Coupon, plan_name: str) -> bool:
        if not coupon.applicable_plans:
            return True
        return plan_name in coupon.applicable_plans

    def redeem(self, coupon: Coupon, user_id: int, amount: Decimal, now: Optional[datetime] = None) -> CouponUsage:
        """
        Record one redemption and bump used_count in the same unit of work.

        Callers are expected to check can_be_used_by first. The counter update is
        conditional on the cap, so two concurrent redemptions cannot both push
        used_count past usage_limit; the loser gets CouponExhausted.
        """
        now = now or utcnow()
        amount = to_decimal(amount) or ZERO
        discount = self.calculate_discount(coupon, amount, now)
        db = self.repo.db
        try:
            if not self.repo.increment_used_count(coupon.id):
                raise CouponExhausted(f"Coupon {coupon.code} has reached its usage limit.")
            usage = self.repo.add_usage(
                CouponUsage(
                    coupon_id=coupon.id,
                    user_id=user_id,
                    amount=amount,
                    discount_amount=discount,
                    used_at=now,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(coupon)
        logger.info(f"Coupon {coupon.code} redeemed by user {user_id}: discount={discount}")
        return usage

    def validate_code(
        self,
        code: str,
        amount: Decimal,
        plan_name: Optional[str] = None,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utcnow()
        coupon = self.repo.get_by_code(code)
        if coupon is None:
            raise LookupMiss("Invalid coupon code.")
        if not self.is_valid(coupon, now):
            raise ValidationError("Coupon is not valid.")
        if plan_name and not self.applies_to_plan(coupon, plan_name):
            raise ValidationError("Coupon is not applicable to this plan.")
        if user_id is not None and not self.can_be_used_by(coupon, user_id, now):
            raise ValidationError("Coupon cannot be used by this account.")

        amount = to_decimal(amount) or ZERO
        discount = self.calculate_discount(coupon, amount, now)
        return {
            "coupon": coupon,
            "discount_amount": discount,
            "final_amount": quantize_money(amount - discount),
        }

    # Administration

    def create(self, **fields) -> Coupon:
        code = (fields.get("code") or "").strip()
        if self.repo.get_by_code(code) is not None:
            raise ValidationError.for_field("code", "The code has already been taken.")
        valid_from = fields.get("valid_from")
        valid_until = fields.get("valid_until")
        if valid_from and valid_until and as_utc(valid_until) <= as_utc(valid_from):
            raise ValidationError.for_field("valid_until", "valid_until must be after valid_from.")
        fields["code"] = code
        coupon = self.repo.add(Coupon(used_count=0, **fields))
        self.repo.db.commit()
        self.repo.db.refresh(coupon)
        logger.info(f"Coupon {coupon.code} created")
        return coupon

    def update(self, coupon_id: int, **fields) -> Coupon:
        coupon = self.get(coupon_id)
        if fields.get("code") is not None:
            code = fields["code"].strip()
            other = self.repo.get_by_code(code)
            if other is not None and other.id != coupon.id:
                raise ValidationError.for_field("code", "The code has already been taken.")
            fields["code"] = code
        valid_from = fields.get("valid_from", coupon.valid_from)
        valid_until = fields.get("valid_until", coupon.valid_until)
        if valid_from and valid_until and as_utc(valid_until) <= as_utc(valid_from):
            raise ValidationError.for_field("valid_until", "valid_until must be after valid_from.")
        usage_limit = fields.get("usage_limit", coupon.usage_limit)
        if usage_limit is not None and usage_limit < (coupon.used_count or 0):
            raise ValidationError.for_field("usage_limit", "usage_limit cannot be below the current usage.")

        for key, value in fields.items():
            setattr(coupon, key, value)
        self.repo.db.commit()
        self.repo.db.refresh(coupon)
        logger.info(f"Coupon {coupon.code} updated: {', '.join(sorted(fields))}")
        return coupon

    def list(self, status: Optional[str] = None, coupon_type: Optional[str] = None) -> List[Coupon]:
        return self.repo.list(status=status, coupon_type=coupon_type, now=utcnow())

    def get(self, coupon_id: int) -> Coupon:
        coupon = self.repo.get_by_id(coupon_id)
        if coupon is None:
            raise LookupMiss(f"Coupon {coupon_id} not found")
        return coupon

    def toggle_status(self, coupon_id: int) -> Coupon:
        coupon = self.get(coupon_id)
        coupon.is_active = not coupon.is_active
        self.repo.db.commit()
        self.repo.db.refresh(coupon)
        return coupon

    def delete(self, coupon_id: int) -> None:
        coupon = self.get(coupon_id)
        if self.repo.count_usages(coupon.id) > 0:
            raise ValidationError("Cannot delete coupon that has been used.")
        self.repo.delete(coupon)
        self.repo.db.commit()
        logger.info(f"Coupon {coupon.code} deleted")

    def statistics(self, coupon_id: int) -> Dict[str, Any]:
        coupon = self.get(coupon_id)
        return {
            "coupon_id": coupon.id,
            "total_usage": self.repo.count_usages(coupon.id),
            "total_discount_given": self.repo.total_discount(coupon.id),
            "recent_usage": self.repo.recent_usages(coupon.id),
        }

    def usage(
        self,
        coupon_id: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 15,
        offset: int = 0,
    ) -> List[CouponUsage]:
        coupon = self.get(coupon_id)
        return self.repo.list_usages(coupon.id, date_from=date_from, date_to=date_to, limit=limit, offset=offset)

    def overall_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        return {
            "total_coupons": self.repo.count_coupons(),
            "active_coupons": self.repo.count_coupons(active_only=True),
            "expired_coupons": self.repo.count_coupons(expired_at=now),
            "total_usage": self.repo.count_all_usages(),
            "total_discount_given": self.repo.total_discount_all(),
            "most_used_coupons": [
                {"id": coupon.id, "code": coupon.code, "name": coupon.name, "usage_count": count}
                for coupon, count in self.repo.most_used()
            ],
            "coupon_types_breakdown": [
                {"type": coupon_type, "count": count, "total_usage": int(total_usage or 0)}
                for coupon_type, count, total_usage in self.repo.type_breakdown()
            ],
        }
