"""
Shared fixtures: in-memory SQLite database, a fake payment gateway and signed
webhook payloads.
"""
import hashlib
import hmac
import itertools
import json
import os
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest  # noqa: E402

from app.core.config import BillingConfig  # noqa: E402
from app.core.errors import GatewayCallFailure  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.session import SessionLocal, engine  # noqa: E402
from app.models import Coupon, SubscriptionPlan, User  # noqa: E402
from app.services.gateway import (  # noqa: E402
    CheckoutSession,
    CheckoutSessionRequest,
    GatewayEvent,
    PaymentGateway,
    StripeGateway,
)

WEBHOOK_SECRET = "whsec_test_secret"


def make_config(**overrides) -> BillingConfig:
    values = dict(
        gateway_name="stripe",
        secret_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        currency="eur",
        default_success_url="https://app.example.com/payment/success",
        default_cancel_url="https://app.example.com/payment/cancel",
        dedup_window_minutes=5,
    )
    values.update(overrides)
    return BillingConfig(**values)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-style signature header: t=<timestamp>,v1=<hex hmac-sha256 of "t.payload">."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1") -> GatewayEvent:
    return GatewayEvent.from_payload(
        {"id": event_id, "type": event_type, "created": int(time.time()), "data": {"object": obj}}
    )


def event_body(event_type: str, obj: Dict[str, Any], event_id: str = "evt_test_1") -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": int(time.time()), "data": {"object": obj}}
    ).encode("utf-8")


class FakeGateway(PaymentGateway):
    """In-process gateway: records calls, returns predictable ids, verifies real signatures."""
    name = "stripe"

    def __init__(self, config: Optional[BillingConfig] = None, fail_checkout: bool = False):
        self.config = config or make_config()
        self.fail_checkout = fail_checkout
        self.customers: List[Dict[str, Any]] = []
        self.sessions: List[CheckoutSessionRequest] = []
        self._ids = itertools.count(1)

    def create_customer(self, email, name, metadata):
        customer_id = f"cus_test_{next(self._ids)}"
        self.customers.append({"id": customer_id, "email": email, "name": name, "metadata": metadata})
        return customer_id

    def create_checkout_session(self, request):
        if self.fail_checkout:
            raise GatewayCallFailure("Unable to create checkout session.")
        self.sessions.append(request)
        session_id = f"cs_test_{next(self._ids)}"
        return CheckoutSession(
            id=session_id,
            url=f"https://checkout.stripe.test/c/pay/{session_id}",
            raw={"id": session_id, "object": "checkout.session"},
        )

    def construct_event(self, payload, signature, secret, tolerance):
        return StripeGateway(self.config).construct_event(payload, signature, secret, tolerance)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def gateway(config):
    return FakeGateway(config)


@pytest.fixture
def user_factory(db):
    counter = itertools.count(1)

    def create(**fields):
        n = next(counter)
        values = dict(name=f"User {n}", email=f"user{n}@example.com", is_active=True, is_admin=False)
        values.update(fields)
        user = User(**values)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return create


@pytest.fixture
def user(user_factory):
    return user_factory()


@pytest.fixture
def plan_factory(db):
    counter = itertools.count(1)

    def create(**fields):
        n = next(counter)
        values = dict(
            name=f"plan{n}",
            display_name=f"Plan {n}",
            price=Decimal("9.99"),
            currency="EUR",
            duration_days=30,
            external_price_id=f"price_test_{n}",
            is_active=True,
            sort_order=n,
        )
        values.update(fields)
        plan = SubscriptionPlan(**values)
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan

    return create


@pytest.fixture
def plan(plan_factory):
    return plan_factory(name="basic", display_name="Basic", external_price_id="price_basic")


@pytest.fixture
def coupon_factory(db):
    counter = itertools.count(1)

    def create(**fields):
        n = next(counter)
        values = dict(
            code=f"CODE{n}",
            name=f"Coupon {n}",
            type="percentage",
            value=Decimal("10"),
            used_count=0,
            is_active=True,
        )
        values.update(fields)
        coupon = Coupon(**values)
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon

    return create


@pytest.fixture
def sign():
    return sign_payload


@pytest.fixture
def webhook_body():
    return event_body


@pytest.fixture
def gateway_event():
    return make_event
