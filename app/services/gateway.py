"""
Payment gateway adapter.

Everything the billing engine needs from the external gateway goes through
``PaymentGateway``: creating customers, opening checkout sessions and
authenticating webhook deliveries. ``StripeGateway`` is the production
implementation; tests swap in a fake.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from app.core.config import BillingConfig
from app.core.errors import AuthenticationError, ConfigurationError, GatewayCallFailure

logger = logging.getLogger(__name__)

# Placeholder the gateway substitutes with the real session id after redirect
CHECKOUT_SESSION_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


@dataclass(frozen=True)
class CheckoutSessionRequest:
    customer_id: str
    price_id: str
    success_url: str
    cancel_url: str
    client_reference_id: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str
    object: Dict[str, Any]
    created: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayEvent":
        data = payload.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise AuthenticationError("Invalid payload")
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise AuthenticationError("Invalid payload")
        return cls(
            id=str(payload.get("id") or ""),
            type=event_type,
            object=data["object"],
            created=payload.get("created"),
            raw=payload,
        )


class PaymentGateway(ABC):
    name = "gateway"

    @abstractmethod
    def create_customer(self, email: str, name: Optional[str], metadata: Dict[str, str]) -> str:
        """Create a customer record and return its gateway id."""

    @abstractmethod
    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        """Open a hosted checkout session for a recurring price."""

    @abstractmethod
    def construct_event(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        tolerance: int,
    ) -> GatewayEvent:
        """Authenticate a webhook delivery and parse it. Must not touch local state."""


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, config: BillingConfig):
        self.config = config
        self._client: Optional[stripe.StripeClient] = None

    def _stripe(self) -> stripe.StripeClient:
        """Client bound to this gateway's key and timeout; no module-level Stripe state is touched."""
        if not self.config.secret_key:
            raise ConfigurationError("Stripe is not configured. Missing STRIPE_SECRET.")
        if self._client is None:
            self._client = stripe.StripeClient(
                self.config.secret_key,
                http_client=stripe.RequestsClient(timeout=self.config.timeout_seconds),
            )
        return self._client

    def create_customer(self, email: str, name: Optional[str], metadata: Dict[str, str]) -> str:
        client = self._stripe()
        params: Dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        try:
            customer = client.customers.create(params=params)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating customer for {email}: {e}")
            raise GatewayCallFailure("Unable to create payment customer.") from e
        logger.info(f"Stripe customer created: {customer.id}")
        return customer.id

    def _session_params(self, request: CheckoutSessionRequest) -> Dict[str, Any]:
        metadata = dict(request.metadata)
        if self.config.company_name:
            metadata["company_name"] = self.config.company_name
        if self.config.tax_id:
            metadata["tax_id"] = self.config.tax_id

        params: Dict[str, Any] = {
            "mode": "subscription",
            "customer": request.customer_id,
            "line_items": [{"price": request.price_id, "quantity": 1}],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": request.client_reference_id,
            "metadata": metadata,
            # Copied onto the gateway subscription so its events carry the same linkage
            "subscription_data": {"metadata": dict(request.metadata)},
            "payment_method_types": ["card"],
        }
        if self.config.automatic_tax:
            params["automatic_tax"] = {"enabled": True}
            params["customer_update"] = {"address": "auto"}
        return params

    def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        client = self._stripe()
        try:
            session = client.checkout.sessions.create(params=self._session_params(request))
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout session for customer {request.customer_id}: {e}")
            raise GatewayCallFailure("Unable to create checkout session.") from e
        logger.info(f"Stripe checkout session created: {session.id}")
        return CheckoutSession(id=session.id, url=session.url, raw=session.to_dict())

    def construct_event(
        self,
        payload: bytes,
        signature: str,
        secret: str,
        tolerance: int,
    ) -> GatewayEvent:
        try:
            text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        except UnicodeDecodeError:
            raise AuthenticationError("Invalid payload")

        try:
            stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook signature rejected: {e}")
            raise AuthenticationError("Invalid signature")

        try:
            data = json.loads(text)
        except ValueError:
            raise AuthenticationError("Invalid payload")
        if not isinstance(data, dict):
            raise AuthenticationError("Invalid payload")
        return GatewayEvent.from_payload(data)
