from typing import Optional
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.core.config import BillingConfig, settings
from app.core.security import decode_access_token
from app.db.session import get_db
from app.models.user import User
from app.repositories.user_repository import UserRepository
from app.services.gateway import PaymentGateway, StripeGateway

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


def get_billing_config() -> BillingConfig:
    return settings.billing_config()


def get_payment_gateway(config: BillingConfig = Depends(get_billing_config)) -> PaymentGateway:
    return StripeGateway(config)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _user_from_token(token: str, db: Session) -> User:
    if token.startswith("Bearer "):
        token = token[7:].strip()

    payload = decode_access_token(token)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    user_id_raw = payload.get("sub")
    try:
        user_id = int(user_id_raw)
    except (ValueError, TypeError):
        logger.warning(f"Token subject is not a user id: {user_id_raw!r}")
        raise _unauthorized("Invalid token")

    user = UserRepository(db).get_by_id(user_id)
    if user is None:
        logger.warning(f"Token refers to unknown user {user_id}")
        raise _unauthorized("User not found")
    if not user.is_active:
        logger.warning(f"User {user_id} is inactive")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not (credentials.credentials or "").strip():
        raise _unauthorized("Not authenticated")
    return _user_from_token(credentials.credentials, db)


def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Optional[User]:
    """Caller when a valid token is sent, None for anonymous requests."""
    if credentials is None or not (credentials.credentials or "").strip():
        return None
    return _user_from_token(credentials.credentials, db)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        logger.warning(f"User {current_user.id} attempted an admin operation")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")
    return current_user
