import pytest
from fastapi.testclient import TestClient

from app.api.v1.dependencies import get_billing_config, get_payment_gateway
from app.core.security import create_access_token
from app.db.session import get_db
from app.main import app


@pytest.fixture
def client(db, gateway, config):
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_billing_config] = lambda: config
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def headers_for(user):
        token = create_access_token({"sub": str(user.id)})
        return {"Authorization": f"Bearer {token}"}

    return headers_for


@pytest.fixture
def admin(user_factory):
    return user_factory(is_admin=True)
