"""
Webhook authentication and dispatch.

The verifier authenticates a raw delivery without touching local state. The
dispatcher routes an authenticated event to its handler and runs each event as
one database transaction. Handlers are idempotent: redeliveries and reordered
events converge on the same rows.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import BillingConfig
from app.core.errors import (
    AuthenticationError,
    ConfigurationError,
    CustomerNotFound,
    LookupMiss,
    PlanNotFound,
    SubscriptionNotFound,
)
from app.models.payment_transaction import TransactionStatus, TransactionType
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_plan import SubscriptionPlan
from app.models.user import User
from app.repositories.payment_transaction_repository import PaymentTransactionRepository
from app.repositories.plan_repository import SubscriptionPlanRepository
from app.repositories.subscription_repository import SubscriptionRepository
from app.repositories.user_repository import UserRepository
from app.services.gateway import GatewayEvent, PaymentGateway
from app.services.payment_ledger import PaymentLedger
from app.services.plan_catalog import PlanCatalog
from app.services.subscription_service import SubscriptionLookup, SubscriptionStateMachine
from app.utils.money import from_minor_units
from app.utils.serialization import from_unix_timestamp, utcnow

logger = logging.getLogger(__name__)

PROCESSED = "processed"
IGNORED = "ignored"
SKIPPED = "skipped"

ACTIVE_GATEWAY_STATUSES = {"active", "trialing"}
ENDED_GATEWAY_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
PAID_CHECKOUT_STATUSES = {"paid", "no_payment_required"}


class WebhookEventVerifier:
    def __init__(self, gateway: PaymentGateway, config: BillingConfig):
        self.gateway = gateway
        self.config = config

    def verify(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not self.config.webhook_secret:
            raise ConfigurationError("Webhook not configured")
        if not signature:
            raise AuthenticationError("Invalid signature")
        return self.gateway.construct_event(
            payload,
            signature,
            self.config.webhook_secret,
            self.config.webhook_tolerance_seconds,
        )


def _get(obj: Any, *path: Any) -> Any:
    """Walk nested gateway dicts and lists, returning None on any missing step."""
    for key in path:
        if isinstance(obj, dict):
            obj = obj.get(key)
        elif isinstance(obj, list) and isinstance(key, int):
            obj = obj[key] if -len(obj) <= key < len(obj) else None
        else:
            return None
        if obj is None:
            return None
    return obj


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _first_line(invoice: Dict[str, Any]) -> Dict[str, Any]:
    return _get(invoice, "lines", "data", 0) or {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    return (
        invoice.get("subscription")
        or _get(invoice, "parent", "subscription_details", "subscription")
        or _first_line(invoice).get("subscription")
    )


def _invoice_price_id(invoice: Dict[str, Any]) -> Optional[str]:
    line = _first_line(invoice)
    return _get(line, "price", "id") or _get(line, "pricing", "price_details", "price")


def _invoice_period_end(invoice: Dict[str, Any]) -> Optional[datetime]:
    return from_unix_timestamp(_get(_first_line(invoice), "period", "end") or invoice.get("period_end"))


def _subscription_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    return from_unix_timestamp(
        subscription.get("current_period_end")
        or _get(subscription, "items", "data", 0, "current_period_end")
    )


class WebhookEventDispatcher:
    def __init__(self, db: Session, config: BillingConfig):
        self.db = db
        self.config = config
        self.users = UserRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.plans = PlanCatalog(SubscriptionPlanRepository(db))
        self.ledger = PaymentLedger(PaymentTransactionRepository(db), gateway_name=config.gateway_name)
        self.subscriptions = SubscriptionStateMachine(self.subscription_repo)
        self.lookup = SubscriptionLookup(self.subscription_repo)
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_succeeded": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_failed,
            "customer.subscription.created": self.handle_subscription_upsert,
            "customer.subscription.updated": self.handle_subscription_upsert,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "payment_intent.succeeded": self.handle_payment_succeeded,
            "payment_intent.payment_failed": self.handle_payment_failed,
        }

    def dispatch(self, event: GatewayEvent) -> str:
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(f"Unhandled webhook event type {event.type} ({event.id}), acknowledging")
            return IGNORED

        logger.info(f"Processing webhook event {event.type} ({event.id})")
        try:
            handler(event.object)
            self.db.commit()
        except LookupMiss as e:
            self.db.rollback()
            logger.warning(f"Webhook event {event.type} ({event.id}) skipped: {e.message}")
            return SKIPPED
        except Exception:
            self.db.rollback()
            logger.error(f"Webhook event {event.type} ({event.id}) failed", exc_info=True)
            raise
        return PROCESSED

    # Resolution helpers

    def _user_for(self, obj: Dict[str, Any]) -> User:
        """User by gateway customer id, falling back to the user id stamped on checkout metadata."""
        customer_id = obj.get("customer")
        if isinstance(customer_id, dict):
            customer_id = customer_id.get("id")
        user = self.users.get_by_gateway_customer_id(customer_id) if customer_id else None
        if user is not None:
            return user

        user_id = _as_int(_get(obj, "metadata", "user_id") or obj.get("client_reference_id"))
        user = self.users.get_by_id(user_id) if user_id else None
        if user is None:
            raise CustomerNotFound(f"No user for gateway customer {customer_id!r}")
        if customer_id and not user.gateway_customer_id:
            self.users.set_gateway_customer_id(user, customer_id)
        return user

    def _plan_for_price(self, price_id: Optional[str]) -> Optional[SubscriptionPlan]:
        if not price_id:
            return None
        try:
            return self.plans.resolve(price_id)
        except PlanNotFound as e:
            logger.warning(e.message)
            return None

    def _currency(self, obj: Dict[str, Any]) -> str:
        return (obj.get("currency") or self.config.currency).upper()

    # Handlers

    def handle_checkout_completed(self, session: Dict[str, Any]) -> None:
        session_id = session.get("id")
        if not session_id:
            raise LookupMiss("Checkout session without id")

        user = self._user_for(session)
        external_subscription_id = session.get("subscription")
        plan_id = _as_int(_get(session, "metadata", "plan_id"))

        subscription: Optional[Subscription] = None
        transaction = self.ledger.repo.get_by_external_id(session_id)
        if transaction is not None and transaction.subscription_id is not None:
            subscription = self.subscription_repo.get_by_id(transaction.subscription_id)
        if subscription is None:
            subscription = self.lookup.resolve(user.id, external_subscription_id, plan_id)

        paid = session.get("payment_status") in PAID_CHECKOUT_STATUSES
        amount = from_minor_units(session.get("amount_total"), session.get("currency"))
        self.ledger.record_or_update(
            session_id,
            user_id=user.id,
            subscription_id=subscription.id,
            status=TransactionStatus.COMPLETED if paid else TransactionStatus.PENDING,
            amount=amount if amount is not None else subscription.amount,
            currency=self._currency(session),
            transaction_type=TransactionType.SUBSCRIPTION,
            payment_method="card",
            payment_details={
                "checkout_session_id": session_id,
                "subscription_id": external_subscription_id,
            },
            gateway_response=session,
            paid_at=utcnow() if paid else None,
            notes="Stripe checkout completed",
        )

        if paid:
            self.subscriptions.activate(subscription, external_subscription_id=external_subscription_id)
        else:
            self.subscriptions.record_period(subscription, None, external_subscription_id)

    def handle_invoice_paid(self, invoice: Dict[str, Any]) -> None:
        user = self._user_for(invoice)
        external_subscription_id = _invoice_subscription_id(invoice)
        plan = self._plan_for_price(_invoice_price_id(invoice))
        subscription = self.lookup.resolve(user.id, external_subscription_id, plan.id if plan else None)

        billing_reason = invoice.get("billing_reason")
        if billing_reason == "subscription_create":
            renewal = False
        elif billing_reason == "subscription_cycle":
            renewal = True
        else:
            renewal = subscription.status == SubscriptionStatus.ACTIVE.value

        invoice_id = invoice.get("id")
        payment_intent_id = invoice.get("payment_intent")
        if isinstance(payment_intent_id, dict):
            payment_intent_id = payment_intent_id.get("id")
        amount = from_minor_units(invoice.get("amount_paid"), invoice.get("currency"))
        paid_at = from_unix_timestamp(_get(invoice, "status_transitions", "paid_at")) or utcnow()

        self.ledger.settle_for_subscription(
            subscription,
            payment_intent_id or invoice_id,
            user_id=user.id,
            initial=not renewal,
            status=TransactionStatus.COMPLETED,
            amount=amount if amount is not None else subscription.amount,
            currency=self._currency(invoice),
            transaction_type=TransactionType.RENEWAL if renewal else TransactionType.SUBSCRIPTION,
            payment_method="card",
            payment_details={
                "invoice_id": invoice_id,
                "payment_intent_id": payment_intent_id,
                "subscription_id": external_subscription_id,
                "billing_reason": billing_reason,
            },
            gateway_response=invoice,
            paid_at=paid_at,
            notes="Subscription renewal payment" if renewal else "Initial subscription payment",
        )

        self.subscriptions.activate(
            subscription,
            period_end=_invoice_period_end(invoice),
            external_subscription_id=external_subscription_id,
            plan=plan,
        )

    def handle_invoice_failed(self, invoice: Dict[str, Any]) -> None:
        user = self._user_for(invoice)
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise LookupMiss("Failed invoice without id")
        external_subscription_id = _invoice_subscription_id(invoice)
        plan = self._plan_for_price(_invoice_price_id(invoice))

        try:
            subscription = self.lookup.resolve(user.id, external_subscription_id, plan.id if plan else None)
        except SubscriptionNotFound:
            subscription = None

        amount = from_minor_units(invoice.get("amount_due"), invoice.get("currency"))
        if amount is None and subscription is not None:
            amount = subscription.amount
        error_message = _get(invoice, "last_payment_error", "message") or "Unknown error"

        self.ledger.record_or_update(
            f"failed_{invoice_id}",
            user_id=user.id,
            subscription_id=subscription.id if subscription is not None else None,
            status=TransactionStatus.FAILED,
            amount=amount,
            currency=self._currency(invoice),
            transaction_type=TransactionType.SUBSCRIPTION,
            payment_method="card",
            payment_details={
                "invoice_id": invoice_id,
                "subscription_id": external_subscription_id,
                "attempt_count": invoice.get("attempt_count") or 0,
            },
            gateway_response=invoice,
            notes=f"Payment failed: {error_message}",
        )

    def handle_subscription_upsert(self, gateway_subscription: Dict[str, Any]) -> None:
        user = self._user_for(gateway_subscription)
        external_subscription_id = gateway_subscription.get("id")
        status = gateway_subscription.get("status")
        plan = self._plan_for_price(_get(gateway_subscription, "items", "data", 0, "price", "id"))
        subscription = self.lookup.resolve(user.id, external_subscription_id, plan.id if plan else None)

        if status in ACTIVE_GATEWAY_STATUSES:
            self.subscriptions.activate(
                subscription,
                period_end=_subscription_period_end(gateway_subscription),
                external_subscription_id=external_subscription_id,
                plan=plan,
            )
        elif status in ENDED_GATEWAY_STATUSES:
            self.subscriptions.cancel(subscription, f"Gateway subscription {status}")
        else:
            logger.info(f"Gateway subscription {external_subscription_id} is {status}; linkage recorded only")
            self.subscriptions.record_period(subscription, None, external_subscription_id)

    def handle_subscription_deleted(self, gateway_subscription: Dict[str, Any]) -> None:
        external_subscription_id = gateway_subscription.get("id")
        subscription = (
            self.subscription_repo.get_by_external_id(external_subscription_id)
            if external_subscription_id
            else None
        )
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription linked to {external_subscription_id!r}")
        self.subscriptions.cancel(subscription, "Cancelled from Stripe")

    def handle_payment_succeeded(self, payment_intent: Dict[str, Any]) -> None:
        payment_intent_id = payment_intent.get("id")
        if not payment_intent_id:
            raise LookupMiss("Payment intent without id")
        user = self._user_for(payment_intent)

        subscription = self.subscription_repo.latest_unclaimed_pending(user.id)
        if subscription is None:
            subscription = self.subscriptions.entitled_subscription(user.id)

        payment_method = _get(payment_intent, "payment_method_types", 0) or "card"
        write = self.ledger.record_backup(
            payment_intent_id,
            user_id=user.id,
            window=timedelta(minutes=self.config.dedup_window_minutes),
            subscription=subscription,
            subscription_id=subscription.id if subscription is not None else None,
            status=TransactionStatus.COMPLETED,
            amount=from_minor_units(payment_intent.get("amount"), payment_intent.get("currency")),
            currency=self._currency(payment_intent),
            transaction_type=TransactionType.SUBSCRIPTION,
            payment_method=payment_method,
            payment_details={"payment_intent_id": payment_intent_id},
            gateway_response=payment_intent,
            paid_at=utcnow(),
            notes="Payment intent succeeded (backup handler)",
        )
        if write.skipped or write.transaction is None:
            return

        transaction = write.transaction
        if transaction.status != TransactionStatus.COMPLETED.value or transaction.subscription_id is None:
            return
        paid_subscription = self.subscription_repo.get_by_id(transaction.subscription_id)
        if paid_subscription is not None:
            self.subscriptions.activate(paid_subscription)

    def handle_payment_failed(self, payment_intent: Dict[str, Any]) -> None:
        payment_intent_id = payment_intent.get("id")
        if not payment_intent_id:
            raise LookupMiss("Payment intent without id")
        user = self._user_for(payment_intent)
        subscription = self.subscription_repo.latest_unclaimed_pending(user.id)
        error_message = _get(payment_intent, "last_payment_error", "message") or "Unknown error"

        self.ledger.record_or_update(
            payment_intent_id,
            user_id=user.id,
            subscription_id=subscription.id if subscription is not None else None,
            status=TransactionStatus.FAILED,
            amount=from_minor_units(payment_intent.get("amount"), payment_intent.get("currency")),
            currency=self._currency(payment_intent),
            transaction_type=TransactionType.SUBSCRIPTION,
            payment_method=_get(payment_intent, "payment_method_types", 0) or "card",
            payment_details={"payment_intent_id": payment_intent_id, "error": error_message},
            gateway_response=payment_intent,
            notes=f"Payment failed: {error_message}",
        )
