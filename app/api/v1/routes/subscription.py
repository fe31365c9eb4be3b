from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.v1.dependencies import get_current_user
from app.db.session import get_db
from app.models.user import User
from app.repositories.subscription_repository import SubscriptionRepository
from app.schemas.subscription import SubscriptionStatusResponse
from app.services.subscription_service import SubscriptionStateMachine

router = APIRouter(tags=["subscription"])


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Entitlement of the current user, computed from status and expires_at."""
    service = SubscriptionStateMachine(SubscriptionRepository(db))
    return service.status_for_user(current_user.id)
