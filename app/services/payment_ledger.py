"""
Payment ledger: one PaymentTransaction row per real-world charge attempt.

Every write is keyed by the gateway's transaction id. Handlers never insert
blindly; they go through ``record_or_update`` (or one of the helpers built on
it), which updates the existing row in place when the key is already known.
The ledger only flushes; the caller owns the surrounding transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from app.core.errors import LookupMiss, ValidationError
from app.models.payment_transaction import PaymentTransaction, TransactionStatus, TransactionType
from app.models.subscription import Subscription
from app.repositories.payment_transaction_repository import PaymentTransactionRepository
from app.utils.serialization import serialize_value, utcnow

logger = logging.getLogger(__name__)

# Statuses a row may move to from each status. Completed never regresses to
# pending or failed, refunded is terminal.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.PENDING.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    TransactionStatus.FAILED.value: {
        TransactionStatus.FAILED.value,
        TransactionStatus.COMPLETED.value,
    },
    TransactionStatus.COMPLETED.value: {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.REFUNDED.value,
    },
    TransactionStatus.REFUNDED.value: {TransactionStatus.REFUNDED.value},
}


@dataclass
class LedgerWrite:
    transaction: Optional[PaymentTransaction]
    created: bool = False
    skipped: bool = False


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, TransactionStatus) else str(status)


def _type_value(transaction_type: Any) -> str:
    return transaction_type.value if isinstance(transaction_type, TransactionType) else str(transaction_type)


class PaymentLedger:
    def __init__(self, repo: PaymentTransactionRepository, gateway_name: str = "stripe"):
        self.repo = repo
        self.gateway_name = gateway_name

    @property
    def db(self):
        return self.repo.db

    def record_or_update(
        self,
        external_id: str,
        *,
        user_id: int,
        status: Any,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        transaction_type: Any = TransactionType.SUBSCRIPTION,
        subscription_id: Optional[int] = None,
        payment_method: Optional[str] = None,
        payment_details: Optional[Dict[str, Any]] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        paid_at: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> LedgerWrite:
        if not external_id:
            raise ValueError("external_id is required for ledger writes")

        existing = self.repo.get_by_external_id(external_id)
        if existing is not None:
            self._apply_update(
                existing,
                status=status,
                amount=amount,
                currency=currency,
                subscription_id=subscription_id,
                payment_details=payment_details,
                gateway_response=gateway_response,
                paid_at=paid_at,
                notes=notes,
            )
            return LedgerWrite(existing, created=False)

        transaction = PaymentTransaction(
            user_id=user_id,
            subscription_id=subscription_id,
            external_transaction_id=external_id,
            gateway=self.gateway_name,
            amount=amount if amount is not None else Decimal("0"),
            currency=(currency or "EUR").upper(),
            status=_status_value(status),
            type=_type_value(transaction_type),
            payment_method=payment_method,
            payment_details=serialize_value(payment_details),
            gateway_response=serialize_value(gateway_response),
            paid_at=paid_at,
            notes=notes,
        )
        return self._insert(transaction)

    def _insert(self, transaction: PaymentTransaction) -> LedgerWrite:
        external_id = transaction.external_transaction_id
        try:
            with self.db.begin_nested():
                self.db.add(transaction)
        except IntegrityError:
            # A concurrent delivery inserted the same key first; treat as a no-op
            logger.info(f"Ledger row {external_id} already written by a concurrent delivery")
            existing = self.repo.get_by_external_id(external_id)
            return LedgerWrite(existing, created=False)
        logger.info(
            f"Ledger row created: {external_id} status={transaction.status} amount={transaction.amount}"
        )
        return LedgerWrite(transaction, created=True)

    def _apply_update(
        self,
        transaction: PaymentTransaction,
        *,
        status: Any,
        amount: Optional[Decimal],
        currency: Optional[str],
        subscription_id: Optional[int],
        payment_details: Optional[Dict[str, Any]],
        gateway_response: Optional[Dict[str, Any]],
        paid_at: Optional[datetime],
        notes: Optional[str],
    ) -> None:
        target = _status_value(status)
        current = transaction.status
        if target not in ALLOWED_TRANSITIONS.get(current, set()):
            logger.info(
                f"Ledger row {transaction.external_transaction_id} kept at {current}; "
                f"ignoring transition to {target}"
            )
            return

        transaction.status = target
        if amount is not None:
            transaction.amount = amount
        if currency:
            transaction.currency = currency.upper()
        if subscription_id is not None and transaction.subscription_id is None:
            transaction.subscription_id = subscription_id
        if payment_details:
            merged = dict(transaction.payment_details or {})
            merged.update(serialize_value(payment_details))
            transaction.payment_details = merged
        if gateway_response is not None:
            transaction.gateway_response = serialize_value(gateway_response)
        if paid_at is not None and transaction.paid_at is None:
            transaction.paid_at = paid_at
        if notes:
            transaction.notes = notes
        self.db.flush()
        if current != target:
            logger.info(f"Ledger row {transaction.external_transaction_id}: {current} -> {target}")

    def open_pending(
        self,
        session_id: str,
        *,
        user_id: int,
        subscription: Subscription,
        amount: Decimal,
        currency: str,
        gateway_response: Optional[Dict[str, Any]] = None,
    ) -> PaymentTransaction:
        """Pending row written when a checkout session is opened, keyed by the session id."""
        write = self.record_or_update(
            session_id,
            user_id=user_id,
            subscription_id=subscription.id,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=currency,
            transaction_type=TransactionType.SUBSCRIPTION,
            payment_method="card",
            payment_details={"checkout_session_id": session_id},
            gateway_response=gateway_response,
            notes="Created before checkout - pending payment confirmation",
        )
        return write.transaction

    def _find(self, external_id: str) -> Optional[PaymentTransaction]:
        transaction = self.repo.get_by_external_id(external_id)
        if transaction is None:
            transaction = self.repo.get_settled_by(external_id)
        return transaction

    def _checkout_row(self, subscription: Subscription, include_completed: bool) -> Optional[PaymentTransaction]:
        pending = self.repo.get_pending_for_subscription(subscription.id)
        if pending is not None or not include_completed:
            return pending
        completed = self.repo.list(
            status=TransactionStatus.COMPLETED.value,
            subscription_id=subscription.id,
        )
        for row in completed:
            if (row.payment_details or {}).get("checkout_session_id") and row.settled_by is None:
                return row
        return None

    def _settle_row(self, row: PaymentTransaction, external_id: str, **fields) -> LedgerWrite:
        """Resolve an existing row with an event keyed differently, remembering that key."""
        write = self.record_or_update(row.external_transaction_id, user_id=row.user_id, **fields)
        if row.settled_by is None:
            row.settled_by = external_id
            self.db.flush()
            logger.info(f"Ledger row {row.external_transaction_id} settled by {external_id}")
        return write

    def settle_for_subscription(
        self,
        subscription: Optional[Subscription],
        external_id: str,
        *,
        user_id: int,
        initial: bool = True,
        **fields,
    ) -> LedgerWrite:
        """
        Resolve a charge for a known subscription.

        When the settling event uses a different key than the checkout session
        (invoice or payment intent ids), the subscription's checkout row is
        resolved in place instead of writing a second row for the same charge.
        The settling key is kept in the row's settled_by column so redeliveries
        find the same row. A checkout row the checkout event already completed is
        only reused for the initial charge, never for a renewal.
        """
        existing = self._find(external_id)
        if existing is not None:
            return self.record_or_update(existing.external_transaction_id, user_id=user_id, **fields)

        if subscription is not None:
            checkout_row = self._checkout_row(subscription, include_completed=initial)
            if checkout_row is not None:
                return self._settle_row(checkout_row, external_id, **fields)

        return self.record_or_update(
            external_id,
            user_id=user_id,
            subscription_id=subscription.id if subscription is not None else None,
            **fields,
        )

    def record_backup(
        self,
        external_id: str,
        *,
        user_id: int,
        window: timedelta,
        subscription: Optional[Subscription] = None,
        now: Optional[datetime] = None,
        **fields,
    ) -> LedgerWrite:
        """
        Backup path for payment-succeeded events that may duplicate another event.

        Resolution order: the exact or settling key; the checkout row still
        pending for the subscription (or, failing that, for the user), which is
        settled in place; a completed payment for this user recorded within the
        window, which skips the write. Only then is a new row inserted. The
        window heuristic can hide a genuine second payment made inside it.
        """
        existing = self._find(external_id)
        if existing is not None:
            return self.record_or_update(existing.external_transaction_id, user_id=user_id, **fields)

        checkout_row = None
        if subscription is not None:
            checkout_row = self.repo.get_pending_for_subscription(subscription.id)
        if checkout_row is None:
            checkout_row = self.repo.get_latest_pending_for_user(user_id)
        if checkout_row is not None:
            return self._settle_row(checkout_row, external_id, **fields)

        now = now or utcnow()
        recent = self.repo.get_completed_since(user_id, now - window)
        if recent is not None:
            logger.info(
                f"Skipping backup ledger write {external_id}: completed payment "
                f"{recent.external_transaction_id} recorded for user {user_id} within {window}"
            )
            return LedgerWrite(recent, created=False, skipped=True)
        return self.record_or_update(external_id, user_id=user_id, **fields)

    # Administration

    def get(self, transaction_id: int) -> PaymentTransaction:
        transaction = self.repo.get_by_id(transaction_id)
        if transaction is None:
            raise LookupMiss(f"Transaction {transaction_id} not found")
        return transaction

    def list(self, **filters) -> List[PaymentTransaction]:
        return self.repo.list(**filters)

    def _admin_transition(self, transaction_id: int, target: TransactionStatus, note: str) -> PaymentTransaction:
        transaction = self.get(transaction_id)
        if target.value not in ALLOWED_TRANSITIONS.get(transaction.status, set()):
            raise ValidationError(
                f"Cannot mark a {transaction.status} transaction as {target.value}."
            )
        transaction.status = target.value
        if target == TransactionStatus.COMPLETED and transaction.paid_at is None:
            transaction.paid_at = utcnow()
        transaction.notes = note
        self.db.commit()
        self.db.refresh(transaction)
        logger.info(f"Transaction {transaction.external_transaction_id} marked {target.value} by admin")
        return transaction

    def mark_completed(self, transaction_id: int) -> PaymentTransaction:
        return self._admin_transition(transaction_id, TransactionStatus.COMPLETED, "Marked completed by admin")

    def mark_failed(self, transaction_id: int) -> PaymentTransaction:
        return self._admin_transition(transaction_id, TransactionStatus.FAILED, "Marked failed by admin")

    def refund(self, transaction_id: int) -> PaymentTransaction:
        transaction = self.get(transaction_id)
        if transaction.status != TransactionStatus.COMPLETED.value:
            raise ValidationError("Only completed transactions can be refunded.")
        return self._admin_transition(transaction_id, TransactionStatus.REFUNDED, "Refunded by admin")

    def update(self, transaction_id: int, status: Any = None, notes: Optional[str] = None) -> PaymentTransaction:
        """Administrative edit; status changes follow the same forward-only rule as webhook writes."""
        transaction = self.get(transaction_id)
        if status is not None:
            target = _status_value(status)
            if target not in ALLOWED_TRANSITIONS.get(transaction.status, set()):
                raise ValidationError(f"Cannot mark a {transaction.status} transaction as {target}.")
            transaction.status = target
            if target == TransactionStatus.COMPLETED.value and transaction.paid_at is None:
                transaction.paid_at = utcnow()
        if notes is not None:
            transaction.notes = notes
        self.db.commit()
        self.db.refresh(transaction)
        logger.info(f"Transaction {transaction.external_transaction_id} updated by admin")
        return transaction

    def statistics(self) -> Dict[str, Any]:
        counts = self.repo.count_by_status()
        revenue = self.repo.revenue_by_currency()
        total_revenue = self.repo.total_revenue()
        return {
            "total_transactions": sum(counts.values()),
            "by_status": {status.value: counts.get(status.value, 0) for status in TransactionStatus},
            "total_revenue": total_revenue,
            "revenue_by_currency": revenue,
        }
