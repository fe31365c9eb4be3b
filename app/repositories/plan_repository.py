from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.payment_transaction import PaymentTransaction, TransactionStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_plan import SubscriptionPlan


class SubscriptionPlanRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, plan_id: int) -> Optional[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.id == plan_id).first()

    def get_by_external_price_id(self, price_id: str) -> Optional[SubscriptionPlan]:
        if not price_id:
            return None
        return (
            self.db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.external_price_id == price_id)
            .first()
        )

    def list_active(self) -> List[SubscriptionPlan]:
        return (
            self.db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id)
            .all()
        )

    def get_by_name(self, name: str) -> Optional[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).filter(SubscriptionPlan.name == name).first()

    def list_all(self) -> List[SubscriptionPlan]:
        return self.db.query(SubscriptionPlan).order_by(SubscriptionPlan.sort_order, SubscriptionPlan.id).all()

    def add(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        self.db.add(plan)
        self.db.flush()
        return plan

    def delete(self, plan: SubscriptionPlan) -> None:
        self.db.delete(plan)
        self.db.flush()

    def count_subscriptions_by_status(self, plan_id: int) -> Dict[str, int]:
        rows = (
            self.db.query(Subscription.status, func.count(Subscription.id))
            .filter(Subscription.plan_id == plan_id)
            .group_by(Subscription.status)
            .all()
        )
        return {status: count for status, count in rows}

    def count_lapsed_subscriptions(self, plan_id: int, now: datetime) -> int:
        """Active rows whose period has ended; status is never flipped on a timer."""
        return (
            self.db.query(func.count(Subscription.id))
            .filter(
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.expires_at.isnot(None),
                Subscription.expires_at <= now,
            )
            .scalar()
        ) or 0

    def completed_revenue(self, plan_id: int) -> Decimal:
        total = (
            self.db.query(func.sum(PaymentTransaction.amount))
            .join(Subscription, Subscription.id == PaymentTransaction.subscription_id)
            .filter(
                Subscription.plan_id == plan_id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
            )
            .scalar()
        )
        return Decimal(str(total or 0))
