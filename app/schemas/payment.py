from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from app.models.payment_transaction import TransactionStatus


class PaymentTransactionResponse(BaseModel):
    id: int
    user_id: int
    subscription_id: Optional[int] = None
    external_transaction_id: str
    settled_by: Optional[str] = None
    gateway: str
    amount: Decimal
    currency: str
    status: str
    type: str
    payment_method: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentStatisticsResponse(BaseModel):
    total_transactions: int
    by_status: Dict[str, int]
    total_revenue: Decimal
    revenue_by_currency: Dict[str, Decimal]


class PaymentTransactionUpdate(BaseModel):
    status: Optional[TransactionStatus] = None
    notes: Optional[str] = None
