from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_billing_config, get_current_user, get_payment_gateway
from app.core.config import BillingConfig
from app.db.session import get_db
from app.models.user import User
from app.schemas.checkout import CheckoutRequest, CheckoutResponse
from app.services.checkout_service import CheckoutService
from app.services.gateway import PaymentGateway

router = APIRouter(tags=["checkout"])


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_200_OK)
def create_checkout_session(
    payload: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    config: BillingConfig = Depends(get_billing_config),
):
    """Open a hosted checkout session for a plan and record the pending attempt."""
    service = CheckoutService(db, gateway, config)
    result = service.create_session(
        current_user,
        payload.plan_id,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return CheckoutResponse(success=True, url=result.url, id=result.id)
