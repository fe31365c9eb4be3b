# Import all models so Alembic can detect them
from app.models.user import User
from app.models.subscription_plan import SubscriptionPlan
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.payment_transaction import PaymentTransaction, TransactionStatus, TransactionType
from app.models.coupon import Coupon, CouponType, CouponUsage

__all__ = [
    "User",
    "SubscriptionPlan",
    "Subscription",
    "SubscriptionStatus",
    "PaymentTransaction",
    "TransactionStatus",
    "TransactionType",
    "Coupon",
    "CouponType",
    "CouponUsage",
]
