from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.user import User


class UserRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, user_id: int) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        normalized = email.strip().lower()
        return (
            self.db.query(User)
            .filter(func.lower(User.email) == normalized)
            .first()
        )

    def get_by_gateway_customer_id(self, customer_id: str) -> Optional[User]:
        if not customer_id:
            return None
        return self.db.query(User).filter(User.gateway_customer_id == customer_id).first()

    def set_gateway_customer_id(self, user: User, customer_id: str) -> User:
        user.gateway_customer_id = customer_id
        self.db.flush()
        return user
