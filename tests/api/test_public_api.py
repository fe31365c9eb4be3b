from decimal import Decimal


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["message"] == "Billing Reconciliation API"


def test_health_reports_database(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_plans_lists_active_plans_in_order(client, plan_factory):
    plan_factory(name="premium", sort_order=2, price=Decimal("19.99"))
    plan_factory(name="basic", sort_order=1)
    plan_factory(name="legacy", sort_order=0, is_active=False)

    response = client.get("/api/v1/plans")

    assert response.status_code == 200
    assert [p["name"] for p in response.json()["plans"]] == ["basic", "premium"]


def test_subscription_status_without_subscription(client, auth_headers, user):
    response = client.get("/api/v1/subscription/status", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["has_subscription"] is False
    assert response.json()["is_entitled"] is False


def test_coupon_validate_anonymous(client, coupon_factory):
    coupon_factory(code="WELCOME10", type="percentage", value=Decimal("10"))
    response = client.post("/api/v1/coupons/validate", json={"code": "WELCOME10", "amount": 100})

    assert response.status_code == 200
    body = response.json()
    assert body["coupon"]["code"] == "WELCOME10"
    assert Decimal(body["discount_amount"]) == Decimal("10.00")
    assert Decimal(body["final_amount"]) == Decimal("90.00")


def test_coupon_validate_unknown_code(client):
    response = client.post("/api/v1/coupons/validate", json={"code": "NOPE", "amount": 100})
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Invalid coupon code."}


def test_coupon_validate_per_user_rules(client, auth_headers, user, coupon_factory):
    coupon_factory(code="OLD", is_active=False)
    response = client.post(
        "/api/v1/coupons/validate", json={"code": "OLD", "amount": 100}, headers=auth_headers(user)
    )
    assert response.status_code == 422


def test_coupon_validate_checks_requested_plan(client, coupon_factory):
    coupon_factory(code="PREMIUM20", value=Decimal("20"), applicable_plans=["premium"])

    wrong_plan = client.post("/api/v1/coupons/validate", json={"code": "PREMIUM20", "amount": 100, "plan": "basic"})
    assert wrong_plan.status_code == 422
    assert wrong_plan.json()["message"] == "Coupon is not applicable to this plan."

    right_plan = client.post("/api/v1/coupons/validate", json={"code": "PREMIUM20", "amount": 100, "plan": "premium"})
    assert right_plan.status_code == 200
    assert Decimal(right_plan.json()["final_amount"]) == Decimal("80.00")
