from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        if not external_subscription_id:
            return None
        return (
            self.db.query(Subscription)
            .filter(Subscription.external_subscription_id == external_subscription_id)
            .first()
        )

    def latest_unclaimed_pending(self, user_id: int, plan_id: Optional[int] = None) -> Optional[Subscription]:
        """Most recent pending row for the user that no gateway subscription has claimed yet."""
        query = self.db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.PENDING.value,
            Subscription.external_subscription_id.is_(None),
        )
        if plan_id is not None:
            query = query.filter(Subscription.plan_id == plan_id)
        return query.order_by(Subscription.id.desc()).first()

    def list_by_user(self, user_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
            .all()
        )

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription
