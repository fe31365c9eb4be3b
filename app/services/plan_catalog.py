import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.errors import ConfigurationError, PlanNotFound, ValidationError
from app.models.subscription import SubscriptionStatus
from app.models.subscription_plan import SubscriptionPlan
from app.repositories.plan_repository import SubscriptionPlanRepository
from app.utils.serialization import utcnow

logger = logging.getLogger(__name__)

PRICE_ID_PREFIX = "price_"


class PlanCatalog:
    """Maps gateway price ids and local plan ids to subscription plans."""

    def __init__(self, repo: SubscriptionPlanRepository):
        self.repo = repo

    def resolve(self, external_price_id: str) -> SubscriptionPlan:
        plan = self.repo.get_by_external_price_id(external_price_id)
        if plan is None:
            raise PlanNotFound(f"No plan mapped to price {external_price_id!r}")
        return plan

    def get(self, plan_id: int) -> SubscriptionPlan:
        plan = self.repo.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFound(f"Plan {plan_id} not found")
        return plan

    def get_billable(self, plan_id: int) -> SubscriptionPlan:
        """Plan usable for a new checkout: exists, active, and mapped to a gateway price."""
        plan = self.repo.get_by_id(plan_id)
        if plan is None:
            raise ValidationError.for_field("plan_id", "The selected plan id is invalid.")
        if not plan.is_active:
            raise ValidationError.for_field("plan_id", "Selected plan is not active.")
        if not plan.external_price_id:
            raise ConfigurationError(
                "Plan is not configured for billing. Please set its external price id.",
                status_code=422,
            )
        return plan

    def list_active(self) -> List[SubscriptionPlan]:
        return self.repo.list_active()

    def set_external_price_id(self, plan_id: int, price_id: str) -> SubscriptionPlan:
        price_id = (price_id or "").strip()
        if not price_id.startswith(PRICE_ID_PREFIX):
            raise ValidationError.for_field(
                "price_id", f"Invalid price id. It must start with {PRICE_ID_PREFIX!r}."
            )
        plan = self.get(plan_id)
        other = self.repo.get_by_external_price_id(price_id)
        if other is not None and other.id != plan.id:
            raise ValidationError.for_field("price_id", f"Price id already used by plan {other.name!r}.")
        plan.external_price_id = price_id
        self.repo.db.commit()
        self.repo.db.refresh(plan)
        logger.info(f"Plan {plan.name} (id={plan.id}) mapped to price {price_id}")
        return plan

    # Administration

    def list_all(self) -> List[SubscriptionPlan]:
        return self.repo.list_all()

    def _check_unique(self, plan_id: Optional[int], fields: Dict[str, Any]) -> None:
        name = fields.get("name")
        if name is not None:
            other = self.repo.get_by_name(name)
            if other is not None and other.id != plan_id:
                raise ValidationError.for_field("name", "The name has already been taken.")
        price_id = fields.get("external_price_id")
        if price_id:
            if not price_id.startswith(PRICE_ID_PREFIX):
                raise ValidationError.for_field(
                    "external_price_id", f"Invalid price id. It must start with {PRICE_ID_PREFIX!r}."
                )
            other = self.repo.get_by_external_price_id(price_id)
            if other is not None and other.id != plan_id:
                raise ValidationError.for_field(
                    "external_price_id", f"Price id already used by plan {other.name!r}."
                )

    def create(self, **fields) -> SubscriptionPlan:
        fields["name"] = fields["name"].strip()
        self._check_unique(None, fields)
        if fields.get("currency"):
            fields["currency"] = fields["currency"].upper()
        plan = self.repo.add(SubscriptionPlan(**fields))
        self.repo.db.commit()
        self.repo.db.refresh(plan)
        logger.info(f"Plan {plan.name} (id={plan.id}) created")
        return plan

    def update(self, plan_id: int, **fields) -> SubscriptionPlan:
        plan = self.get(plan_id)
        if fields.get("name") is not None:
            fields["name"] = fields["name"].strip()
        self._check_unique(plan.id, fields)
        if fields.get("currency"):
            fields["currency"] = fields["currency"].upper()
        for key, value in fields.items():
            setattr(plan, key, value)
        self.repo.db.commit()
        self.repo.db.refresh(plan)
        logger.info(f"Plan {plan.name} (id={plan.id}) updated: {', '.join(sorted(fields))}")
        return plan

    def toggle_status(self, plan_id: int) -> SubscriptionPlan:
        plan = self.get(plan_id)
        plan.is_active = not plan.is_active
        self.repo.db.commit()
        self.repo.db.refresh(plan)
        logger.info(f"Plan {plan.name} is now {'active' if plan.is_active else 'inactive'}")
        return plan

    def delete(self, plan_id: int) -> None:
        plan = self.get(plan_id)
        if sum(self.repo.count_subscriptions_by_status(plan.id).values()) > 0:
            raise ValidationError("Cannot delete plan that has subscriptions. Deactivate it instead.")
        self.repo.delete(plan)
        self.repo.db.commit()
        logger.info(f"Plan {plan.name} deleted")

    def statistics(self, plan_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        plan = self.get(plan_id)
        now = now or utcnow()
        counts = self.repo.count_subscriptions_by_status(plan.id)
        lapsed = self.repo.count_lapsed_subscriptions(plan.id, now)
        return {
            "plan_id": plan.id,
            "total_subscriptions": sum(counts.values()),
            "active_subscriptions": counts.get(SubscriptionStatus.ACTIVE.value, 0) - lapsed,
            "expired_subscriptions": counts.get(SubscriptionStatus.EXPIRED.value, 0) + lapsed,
            "cancelled_subscriptions": counts.get(SubscriptionStatus.CANCELLED.value, 0),
            "pending_subscriptions": counts.get(SubscriptionStatus.PENDING.value, 0),
            "total_revenue": self.repo.completed_revenue(plan.id),
        }
