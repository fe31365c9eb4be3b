import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, Numeric, Text, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.db.base import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionType(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    RENEWAL = "renewal"


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    # Gateway-assigned id, the idempotency key for every ledger write
    external_transaction_id = Column(String(255), unique=True, nullable=False)
    # Key of the event that settled this row when it differs from external_transaction_id
    settled_by = Column(String(255), unique=True, nullable=True)
    gateway = Column(String(32), nullable=False, default="stripe")
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EUR")
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    type = Column(String(20), nullable=False, default=TransactionType.SUBSCRIPTION.value)
    payment_method = Column(String(32), nullable=True)
    payment_details = Column(JSON, nullable=True)
    gateway_response = Column(JSON, nullable=True)  # raw event snapshot for audit
    paid_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="payment_transactions")
    subscription = relationship("Subscription", back_populates="payment_transactions")

    __table_args__ = (
        Index("idx_payment_transactions_user_status_paid", "user_id", "status", "paid_at"),
    )
