from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.payment_transaction import PaymentTransaction, TransactionStatus


class PaymentTransactionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, transaction_id: int) -> Optional[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(PaymentTransaction.id == transaction_id).first()

    def get_by_external_id(self, external_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.external_transaction_id == external_id)
            .first()
        )

    def get_pending_for_subscription(self, subscription_id: int) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.subscription_id == subscription_id,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .order_by(PaymentTransaction.id.desc())
            .first()
        )

    def get_completed_since(self, user_id: int, since: datetime) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
                PaymentTransaction.paid_at >= since,
            )
            .order_by(PaymentTransaction.id.desc())
            .first()
        )

    def list(
        self,
        status: Optional[str] = None,
        user_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[PaymentTransaction]:
        query = self.db.query(PaymentTransaction)
        if status:
            query = query.filter(PaymentTransaction.status == status)
        if user_id is not None:
            query = query.filter(PaymentTransaction.user_id == user_id)
        if subscription_id is not None:
            query = query.filter(PaymentTransaction.subscription_id == subscription_id)
        return query.order_by(PaymentTransaction.id.desc()).offset(offset).limit(limit).all()

    def count_by_status(self) -> Dict[str, int]:
        rows = (
            self.db.query(PaymentTransaction.status, func.count(PaymentTransaction.id))
            .group_by(PaymentTransaction.status)
            .all()
        )
        return {status: count for status, count in rows}

    def revenue_by_currency(self) -> Dict[str, Decimal]:
        rows = (
            self.db.query(PaymentTransaction.currency, func.sum(PaymentTransaction.amount))
            .filter(PaymentTransaction.status == TransactionStatus.COMPLETED.value)
            .group_by(PaymentTransaction.currency)
            .all()
        )
        return {currency: Decimal(str(total or 0)) for currency, total in rows}

    def get_settled_by(self, external_id: str) -> Optional[PaymentTransaction]:
        """Row that an event with a different key already settled."""
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.settled_by == external_id)
            .first()
        )

    def get_latest_pending_for_user(self, user_id: int) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.status == TransactionStatus.PENDING.value,
            )
            .order_by(PaymentTransaction.id.desc())
            .first()
        )

    def total_revenue(self) -> Decimal:
        total = (
            self.db.query(func.sum(PaymentTransaction.amount))
            .filter(PaymentTransaction.status == TransactionStatus.COMPLETED.value)
            .scalar()
        )
        return Decimal(str(total or 0))
