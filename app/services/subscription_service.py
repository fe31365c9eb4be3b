from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from app.core.errors import LookupMiss, SubscriptionNotFound, ValidationError
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_plan import SubscriptionPlan
from app.repositories.subscription_repository import SubscriptionRepository
from app.utils.serialization import as_utc, utcnow

logger = logging.getLogger(__name__)

# Plan length assumed when a plan row carries no duration
DEFAULT_DURATION_DAYS = 30


def is_entitled(subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """
    Whether a subscription currently grants access.

    Status is never flipped to expired on a timer, so an active row whose
    expires_at has passed is treated as expired here. An active row without
    expires_at grants nothing; activation always stamps at least a provisional
    period end.
    """
    if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value:
        return False
    expires_at = as_utc(subscription.expires_at)
    if expires_at is None:
        return False
    return expires_at > (now or utcnow())


class SubscriptionLookup:
    """Single resolution order for "which local subscription does this event concern"."""

    def __init__(self, repo: SubscriptionRepository):
        self.repo = repo

    def resolve(
        self,
        user_id: int,
        external_subscription_id: Optional[str],
        plan_id: Optional[int] = None,
    ) -> Subscription:
        # 1. exact gateway id
        if external_subscription_id:
            subscription = self.repo.get_by_external_id(external_subscription_id)
            if subscription is not None:
                if subscription.user_id != user_id:
                    raise SubscriptionNotFound(
                        f"Subscription {external_subscription_id} belongs to another user"
                    )
                return subscription

        # 2. the checkout attempt still waiting for its gateway subscription
        pending = self.repo.latest_unclaimed_pending(user_id, plan_id)
        if pending is not None:
            if external_subscription_id:
                pending.external_subscription_id = external_subscription_id
                self.repo.db.flush()
                logger.info(
                    f"Subscription {pending.id} claimed gateway subscription {external_subscription_id}"
                )
            return pending

        raise SubscriptionNotFound(
            f"No subscription for user {user_id} matching {external_subscription_id or 'pending checkout'}"
        )


class SubscriptionStateMachine:
    def __init__(self, repo: SubscriptionRepository):
        self.repo = repo

    def open_pending(self, user_id: int, plan: SubscriptionPlan, now: Optional[datetime] = None) -> Subscription:
        """
        Pending row for a new checkout attempt.

        An abandoned attempt for the same plan (still pending, never confirmed) is
        reused; active or cancelled rows are left alone and a new row is created.
        """
        now = now or utcnow()
        subscription = self.repo.latest_unclaimed_pending(user_id, plan.id)
        if subscription is not None:
            subscription.amount = plan.price
            subscription.started_at = now
            subscription.notes = "Updated before checkout - pending payment confirmation"
            self.repo.db.flush()
            return subscription

        return self.repo.add(
            Subscription(
                user_id=user_id,
                plan_id=plan.id,
                status=SubscriptionStatus.PENDING.value,
                started_at=now,
                expires_at=None,
                amount=plan.price,
                billing_cycle="monthly",
                auto_renew=True,
                notes="Created before checkout - pending payment confirmation",
            )
        )

    def activate(
        self,
        subscription: Subscription,
        period_end: Optional[datetime] = None,
        external_subscription_id: Optional[str] = None,
        plan: Optional[SubscriptionPlan] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Apply "subscription is active until period_end". Returns True when anything changed.

        Cancelled rows are never reactivated; a returning user checks out again
        and gets a new row. When the confirming event carries no period end and
        none is known yet, the row is active for one plan duration until an
        invoice or subscription event reports the real one.
        """
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            logger.warning(
                f"Ignoring activation of cancelled subscription {subscription.id} "
                f"(gateway id {external_subscription_id or subscription.external_subscription_id})"
            )
            return False

        changed = False
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            logger.info(f"Subscription {subscription.id}: {subscription.status} -> active")
            subscription.status = SubscriptionStatus.ACTIVE.value
            changed = True
        if external_subscription_id and not subscription.external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
            changed = True
        if plan is not None and subscription.plan_id != plan.id:
            logger.info(f"Subscription {subscription.id} moved to plan {plan.name}")
            subscription.plan_id = plan.id
            subscription.amount = plan.price
            changed = True
        if period_end is None and subscription.expires_at is None:
            period_end = self._provisional_period_end(subscription, plan, now)
            logger.info(
                f"Subscription {subscription.id} has no reported period end; "
                f"provisionally active until {period_end.isoformat()}"
            )
        if period_end is not None and as_utc(subscription.expires_at) != as_utc(period_end):
            subscription.expires_at = period_end
            changed = True
        if changed:
            self.repo.db.flush()
        return changed

    def _provisional_period_end(
        self,
        subscription: Subscription,
        plan: Optional[SubscriptionPlan],
        now: Optional[datetime],
    ) -> datetime:
        plan = plan or subscription.plan
        if plan is None and subscription.plan_id is not None:
            plan = self.repo.db.get(SubscriptionPlan, subscription.plan_id)
        duration_days = (plan.duration_days if plan is not None else None) or DEFAULT_DURATION_DAYS
        return (now or utcnow()) + timedelta(days=duration_days)

    def record_period(self, subscription: Subscription, period_end: Optional[datetime], external_subscription_id: Optional[str]) -> None:
        """Keep gateway linkage current without changing status."""
        if external_subscription_id and not subscription.external_subscription_id:
            subscription.external_subscription_id = external_subscription_id
        if period_end is not None and subscription.status == SubscriptionStatus.ACTIVE.value:
            subscription.expires_at = period_end
        self.repo.db.flush()

    def cancel(self, subscription: Subscription, reason: str, now: Optional[datetime] = None) -> bool:
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return False
        logger.info(f"Subscription {subscription.id}: {subscription.status} -> cancelled ({reason})")
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = now or utcnow()
        subscription.auto_renew = False
        subscription.notes = reason
        self.repo.db.flush()
        return True

    def cancel_by_admin(self, subscription_id: int, reason: Optional[str] = None) -> Subscription:
        subscription = self.repo.get_by_id(subscription_id)
        if subscription is None:
            raise LookupMiss(f"Subscription {subscription_id} not found")
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ValidationError("Subscription is already cancelled.")
        self.cancel(subscription, reason or "Cancelled by administrator")
        self.repo.db.commit()
        self.repo.db.refresh(subscription)
        return subscription

    def entitled_subscription(self, user_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
        now = now or utcnow()
        for subscription in self.repo.list_by_user(user_id):
            if is_entitled(subscription, now):
                return subscription
        return None

    def status_for_user(self, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Entitlement summary for the user's current subscription."""
        now = now or utcnow()
        subscription = self.entitled_subscription(user_id, now)
        if subscription is None:
            history = self.repo.list_by_user(user_id)
            subscription = history[0] if history else None

        if subscription is None:
            return {
                "has_subscription": False,
                "is_entitled": False,
                "status": None,
                "plan": None,
                "expires_at": None,
            }

        expires_at = as_utc(subscription.expires_at)
        return {
            "has_subscription": True,
            "is_entitled": is_entitled(subscription, now),
            "subscription_id": subscription.id,
            "status": subscription.status,
            "plan": subscription.plan.name if subscription.plan else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "auto_renew": subscription.auto_renew,
        }
