from app.models.payment_transaction import PaymentTransaction


def test_checkout_returns_redirect(client, auth_headers, user, plan, db):
    response = client.post("/api/v1/checkout", json={"plan_id": plan.id}, headers=auth_headers(user))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["url"].startswith("https://checkout.stripe.test/")
    transaction = db.query(PaymentTransaction).one()
    assert transaction.external_transaction_id == body["id"]
    assert transaction.status == "pending"


def test_checkout_requires_authentication(client, plan):
    response = client.post("/api/v1/checkout", json={"plan_id": plan.id})
    assert response.status_code == 401


def test_checkout_rejects_inactive_plan(client, auth_headers, user, plan_factory):
    plan = plan_factory(is_active=False)
    response = client.post("/api/v1/checkout", json={"plan_id": plan.id}, headers=auth_headers(user))

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["errors"] == {"plan_id": ["Selected plan is not active."]}


def test_checkout_rejects_relative_urls(client, auth_headers, user, plan):
    response = client.post(
        "/api/v1/checkout",
        json={"plan_id": plan.id, "success_url": "/done", "cancel_url": "https://app.example.com/back"},
        headers=auth_headers(user),
    )
    assert response.status_code == 422
    assert "success_url" in response.json()["errors"]


def test_checkout_gateway_failure(client, auth_headers, user, plan, gateway, db):
    gateway.fail_checkout = True
    response = client.post("/api/v1/checkout", json={"plan_id": plan.id}, headers=auth_headers(user))

    assert response.status_code == 500
    assert response.json()["success"] is False
    assert db.query(PaymentTransaction).count() == 0
