import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_billing_config, get_payment_gateway
from app.core.config import BillingConfig
from app.core.errors import AuthenticationError, ConfigurationError
from app.db.session import get_db
from app.services.gateway import PaymentGateway
from app.services.webhook_service import WebhookEventDispatcher, WebhookEventVerifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/gateway", response_class=PlainTextResponse)
async def gateway_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: BillingConfig = Depends(get_billing_config),
):
    """Authenticate a gateway delivery and apply it to local state."""
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature") or request.headers.get("Signature")

    try:
        event = WebhookEventVerifier(gateway, config).verify(payload, signature)
    except ConfigurationError:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        return PlainTextResponse("Webhook not configured", status_code=500)
    except AuthenticationError as e:
        logger.warning(f"Webhook rejected: {e.message}")
        return PlainTextResponse(e.message, status_code=400)

    outcome = WebhookEventDispatcher(db, config).dispatch(event)
    logger.info(f"Webhook {event.type} ({event.id}) {outcome}")
    return PlainTextResponse("success", status_code=200)
