import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from app.core.config import BillingConfig
from app.core.errors import ConfigurationError, ValidationError
from app.models.user import User
from app.repositories.payment_transaction_repository import PaymentTransactionRepository
from app.repositories.plan_repository import SubscriptionPlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.services.gateway import (
    CHECKOUT_SESSION_PLACEHOLDER,
    CheckoutSessionRequest,
    PaymentGateway,
)
from app.services.payment_ledger import PaymentLedger
from app.services.plan_catalog import PlanCatalog
from app.services.subscription_service import SubscriptionStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    url: str
    id: str


def is_absolute_http_url(url: Optional[str]) -> bool:
    """http(s) URL with a host, once the session placeholder is filled in."""
    if not url:
        return False
    candidate = url.replace(CHECKOUT_SESSION_PLACEHOLDER, "cs_placeholder")
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def with_session_placeholder(url: str) -> str:
    if CHECKOUT_SESSION_PLACEHOLDER in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={CHECKOUT_SESSION_PLACEHOLDER}"


class CheckoutService:
    """Opens hosted checkout sessions and records the pending attempt."""

    def __init__(self, db: Session, gateway: PaymentGateway, config: BillingConfig):
        self.db = db
        self.gateway = gateway
        self.config = config
        self.users = UserRepository(db)
        self.plans = PlanCatalog(SubscriptionPlanRepository(db))
        self.subscriptions = SubscriptionStateMachine(SubscriptionRepository(db))
        self.ledger = PaymentLedger(PaymentTransactionRepository(db), gateway_name=config.gateway_name)

    def _validate_urls(self, success_url: Optional[str], cancel_url: Optional[str]) -> None:
        errors = {}
        if not is_absolute_http_url(success_url):
            errors["success_url"] = ["The success url must be a valid URL."]
        if not is_absolute_http_url(cancel_url):
            errors["cancel_url"] = ["The cancel url must be a valid URL."]
        if errors:
            raise ValidationError("The given data was invalid.", errors=errors)

    def _ensure_customer(self, user: User) -> str:
        if user.gateway_customer_id:
            return user.gateway_customer_id

        customer_id = self.gateway.create_customer(
            email=user.email,
            name=user.name,
            metadata={"user_id": str(user.id)},
        )
        self.users.set_gateway_customer_id(user, customer_id)
        self.db.commit()
        logger.info(f"User {user.id} linked to gateway customer {customer_id}")
        return customer_id

    def create_session(
        self,
        user: User,
        plan_id: int,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        plan = self.plans.get_billable(plan_id)

        if not self.config.secret_key:
            raise ConfigurationError("Stripe is not configured. Missing STRIPE_SECRET.")

        success_url = success_url or self.config.default_success_url
        cancel_url = cancel_url or self.config.default_cancel_url
        self._validate_urls(success_url, cancel_url)

        customer_id = self._ensure_customer(user)

        metadata = {"user_id": str(user.id), "plan_id": str(plan.id)}
        session = self.gateway.create_checkout_session(
            CheckoutSessionRequest(
                customer_id=customer_id,
                price_id=plan.external_price_id,
                success_url=with_session_placeholder(success_url),
                cancel_url=cancel_url,
                client_reference_id=str(user.id),
                metadata=metadata,
            )
        )

        try:
            subscription = self.subscriptions.open_pending(user.id, plan)
            self.ledger.open_pending(
                session.id,
                user_id=user.id,
                subscription=subscription,
                amount=plan.price,
                currency=plan.currency or self.config.currency,
                gateway_response=session.raw,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(
                f"Failed to record checkout session {session.id} for user {user.id}", exc_info=True
            )
            raise

        logger.info(
            f"Checkout session {session.id} opened for user {user.id}, plan {plan.name}, "
            f"subscription {subscription.id}"
        )
        return CheckoutResult(url=session.url, id=session.id)
