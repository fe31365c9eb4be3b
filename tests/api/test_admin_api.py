from datetime import timedelta
from decimal import Decimal

from app.models.payment_transaction import PaymentTransaction
from app.models.subscription import Subscription
from app.repositories.coupon_repository import CouponRepository
from app.services.coupon_service import CouponService
from app.utils.serialization import utcnow


def _pending_checkout(client, auth_headers, user, plan):
    response = client.post("/api/v1/checkout", json={"plan_id": plan.id}, headers=auth_headers(user))
    assert response.status_code == 200
    return response.json()["id"]


def test_admin_routes_require_admin(client, auth_headers, user):
    response = client.get("/api/v1/admin/payments", headers=auth_headers(user))
    assert response.status_code == 403


def test_list_and_filter_payments(client, auth_headers, admin, user, plan):
    session_id = _pending_checkout(client, auth_headers, user, plan)

    response = client.get("/api/v1/admin/payments?status=pending", headers=auth_headers(admin))
    assert response.status_code == 200
    assert [p["external_transaction_id"] for p in response.json()] == [session_id]

    response = client.get("/api/v1/admin/payments?status=completed", headers=auth_headers(admin))
    assert response.json() == []


def test_mark_completed_then_refund(client, auth_headers, admin, user, plan, db):
    _pending_checkout(client, auth_headers, user, plan)
    transaction_id = db.query(PaymentTransaction).one().id
    headers = auth_headers(admin)

    refund = client.post(f"/api/v1/admin/payments/{transaction_id}/refund", headers=headers)
    assert refund.status_code == 422

    completed = client.post(f"/api/v1/admin/payments/{transaction_id}/mark-completed", headers=headers)
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    failed = client.post(f"/api/v1/admin/payments/{transaction_id}/mark-failed", headers=headers)
    assert failed.status_code == 422

    refunded = client.post(f"/api/v1/admin/payments/{transaction_id}/refund", headers=headers)
    assert refunded.status_code == 200
    assert refunded.json()["status"] == "refunded"

    stats = client.get("/api/v1/admin/payments/statistics", headers=headers).json()
    assert stats["total_transactions"] == 1
    assert stats["by_status"]["refunded"] == 1


def test_unknown_payment_is_404(client, auth_headers, admin):
    response = client.post("/api/v1/admin/payments/999/mark-completed", headers=auth_headers(admin))
    assert response.status_code == 404
    assert response.json()["success"] is False


def test_cancel_subscription(client, auth_headers, admin, user, plan, db):
    _pending_checkout(client, auth_headers, user, plan)
    subscription_id = db.query(PaymentTransaction).one().subscription_id
    headers = auth_headers(admin)

    response = client.post(
        f"/api/v1/admin/subscriptions/{subscription_id}/cancel", json={"reason": "Requested by user"}, headers=headers
    )
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    assert response.json()["notes"] == "Requested by user"

    again = client.post(f"/api/v1/admin/subscriptions/{subscription_id}/cancel", headers=headers)
    assert again.status_code == 422


def test_set_plan_price_id(client, auth_headers, admin, plan_factory):
    plan = plan_factory(external_price_id=None)
    headers = auth_headers(admin)

    bad = client.put(f"/api/v1/admin/plans/{plan.id}/price-id", json={"price_id": "prod_123"}, headers=headers)
    assert bad.status_code == 422
    assert "price_id" in bad.json()["errors"]

    ok = client.put(f"/api/v1/admin/plans/{plan.id}/price-id", json={"price_id": "price_123"}, headers=headers)
    assert ok.status_code == 200
    assert ok.json()["external_price_id"] == "price_123"


def test_coupon_lifecycle(client, auth_headers, admin):
    headers = auth_headers(admin)
    created = client.post(
        "/api/v1/admin/coupons",
        json={"code": "SPRING", "name": "Spring sale", "type": "percentage", "value": "15", "usage_limit": 100},
        headers=headers,
    )
    assert created.status_code == 201
    coupon = created.json()
    assert coupon["used_count"] == 0
    assert coupon["type"] == "percentage"

    listed = client.get("/api/v1/admin/coupons?status=active", headers=headers).json()
    assert [c["code"] for c in listed] == ["SPRING"]

    toggled = client.post(f"/api/v1/admin/coupons/{coupon['id']}/toggle-status", headers=headers)
    assert toggled.json()["is_active"] is False

    stats = client.get(f"/api/v1/admin/coupons/{coupon['id']}/statistics", headers=headers).json()
    assert stats["total_usage"] == 0
    assert Decimal(stats["total_discount_given"]) == Decimal("0")

    deleted = client.delete(f"/api/v1/admin/coupons/{coupon['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/v1/admin/coupons/{coupon['id']}", headers=headers).status_code == 404


def test_duplicate_coupon_code(client, auth_headers, admin, coupon_factory):
    coupon_factory(code="TAKEN")
    response = client.post(
        "/api/v1/admin/coupons",
        json={"code": "TAKEN", "name": "Again", "type": "fixed_amount", "value": "5"},
        headers=auth_headers(admin),
    )
    assert response.status_code == 422
    assert response.json()["errors"] == {"code": ["The code has already been taken."]}


def test_update_payment(client, auth_headers, admin, user, plan, db):
    _pending_checkout(client, auth_headers, user, plan)
    transaction_id = db.query(PaymentTransaction).one().id
    headers = auth_headers(admin)

    noted = client.put(f"/api/v1/admin/payments/{transaction_id}", json={"notes": "Paid by bank transfer"}, headers=headers)
    assert noted.status_code == 200
    assert noted.json()["notes"] == "Paid by bank transfer"
    assert noted.json()["status"] == "pending"

    completed = client.put(f"/api/v1/admin/payments/{transaction_id}", json={"status": "completed"}, headers=headers)
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    assert completed.json()["paid_at"] is not None

    backwards = client.put(f"/api/v1/admin/payments/{transaction_id}", json={"status": "pending"}, headers=headers)
    assert backwards.status_code == 422

    stats = client.get("/api/v1/admin/payments/statistics", headers=headers).json()
    assert Decimal(stats["total_revenue"]) == Decimal("9.99")


def test_update_coupon(client, auth_headers, admin, coupon_factory):
    coupon_factory(code="TAKEN")
    coupon = coupon_factory(code="SUMMER", usage_limit=10, description="Summer sale")
    headers = auth_headers(admin)

    updated = client.put(
        f"/api/v1/admin/coupons/{coupon.id}",
        json={"value": "25", "description": None, "applicable_plans": ["premium"]},
        headers=headers,
    )
    assert updated.status_code == 200
    body = updated.json()
    assert Decimal(body["value"]) == Decimal("25")
    assert body["description"] is None
    assert body["applicable_plans"] == ["premium"]
    assert body["code"] == "SUMMER"
    assert body["usage_limit"] == 10

    duplicate = client.put(f"/api/v1/admin/coupons/{coupon.id}", json={"code": "TAKEN"}, headers=headers)
    assert duplicate.status_code == 422
    assert duplicate.json()["errors"] == {"code": ["The code has already been taken."]}


def test_coupon_usage_and_overall_statistics(client, auth_headers, admin, user, coupon_factory, db):
    coupon = coupon_factory(code="WELCOME", type="fixed_amount", value=Decimal("5"))
    coupon_factory(code="DORMANT", is_active=False)
    service = CouponService(CouponRepository(db))
    service.redeem(coupon, user.id, Decimal("20"))
    service.redeem(coupon, user.id, Decimal("30"))
    headers = auth_headers(admin)

    usage = client.get(f"/api/v1/admin/coupons/{coupon.id}/usage", headers=headers)
    assert usage.status_code == 200
    assert [Decimal(u["amount"]) for u in usage.json()] == [Decimal("30"), Decimal("20")]
    assert all(u["user_id"] == user.id for u in usage.json())

    paged = client.get(f"/api/v1/admin/coupons/{coupon.id}/usage?limit=1&offset=1", headers=headers)
    assert [Decimal(u["amount"]) for u in paged.json()] == [Decimal("20")]

    stats = client.get("/api/v1/admin/coupons/statistics", headers=headers)
    assert stats.status_code == 200
    body = stats.json()
    assert body["total_coupons"] == 2
    assert body["active_coupons"] == 1
    assert body["total_usage"] == 2
    assert Decimal(body["total_discount_given"]) == Decimal("10.00")
    assert body["most_used_coupons"][0]["code"] == "WELCOME"
    assert body["most_used_coupons"][0]["usage_count"] == 2
    breakdown = {row["type"]: row for row in body["coupon_types_breakdown"]}
    assert breakdown["fixed_amount"]["total_usage"] == 2
    assert breakdown["percentage"]["count"] == 1


def test_usage_of_unknown_coupon_is_404(client, auth_headers, admin):
    response = client.get("/api/v1/admin/coupons/999/usage", headers=auth_headers(admin))
    assert response.status_code == 404


def test_plan_create_and_update(client, auth_headers, admin, plan):
    headers = auth_headers(admin)

    created = client.post(
        "/api/v1/admin/plans",
        json={"name": "premium", "display_name": "Premium", "price": "19.99", "currency": "eur", "duration_days": 30},
        headers=headers,
    )
    assert created.status_code == 201
    premium = created.json()
    assert premium["currency"] == "EUR"
    assert premium["is_active"] is True
    assert premium["external_price_id"] is None

    duplicate = client.post("/api/v1/admin/plans", json={"name": "basic", "price": "1"}, headers=headers)
    assert duplicate.status_code == 422
    assert duplicate.json()["errors"] == {"name": ["The name has already been taken."]}

    bad_price = client.post(
        "/api/v1/admin/plans", json={"name": "pro", "price": "29", "external_price_id": "prod_1"}, headers=headers
    )
    assert bad_price.status_code == 422
    assert "external_price_id" in bad_price.json()["errors"]

    taken_price = client.put(
        f"/api/v1/admin/plans/{premium['id']}", json={"external_price_id": "price_basic"}, headers=headers
    )
    assert taken_price.status_code == 422

    updated = client.put(
        f"/api/v1/admin/plans/{premium['id']}",
        json={"price": "24.99", "display_name": None, "external_price_id": "price_premium"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert Decimal(updated.json()["price"]) == Decimal("24.99")
    assert updated.json()["display_name"] is None
    assert updated.json()["external_price_id"] == "price_premium"
    assert updated.json()["name"] == "premium"

    listed = client.get("/api/v1/admin/plans", headers=headers).json()
    assert {p["name"] for p in listed} == {"basic", "premium"}


def test_plan_toggle_hides_it_from_public_list(client, auth_headers, admin, plan):
    headers = auth_headers(admin)

    toggled = client.post(f"/api/v1/admin/plans/{plan.id}/toggle-status", headers=headers)
    assert toggled.status_code == 200
    assert toggled.json()["is_active"] is False
    assert client.get("/api/v1/plans").json()["plans"] == []

    again = client.post(f"/api/v1/admin/plans/{plan.id}/toggle-status", headers=headers)
    assert again.json()["is_active"] is True


def test_plan_delete_refused_while_subscribed(client, auth_headers, admin, user, plan, plan_factory):
    headers = auth_headers(admin)
    _pending_checkout(client, auth_headers, user, plan)

    refused = client.delete(f"/api/v1/admin/plans/{plan.id}", headers=headers)
    assert refused.status_code == 422
    assert refused.json()["message"] == "Cannot delete plan that has subscriptions. Deactivate it instead."

    unused = plan_factory(name="unused")
    deleted = client.delete(f"/api/v1/admin/plans/{unused.id}", headers=headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/v1/admin/plans/{unused.id}", headers=headers).status_code == 404


def test_plan_statistics(client, auth_headers, admin, user_factory, plan, db):
    now = utcnow()
    active_user, lapsed_user, pending_user = user_factory(), user_factory(), user_factory()
    active = Subscription(
        user_id=active_user.id, plan_id=plan.id, status="active", amount=plan.price, expires_at=now + timedelta(days=20)
    )
    lapsed = Subscription(
        user_id=lapsed_user.id, plan_id=plan.id, status="active", amount=plan.price, expires_at=now - timedelta(days=2)
    )
    pending = Subscription(user_id=pending_user.id, plan_id=plan.id, status="pending", amount=plan.price)
    db.add_all([active, lapsed, pending])
    db.flush()
    db.add(
        PaymentTransaction(
            user_id=active_user.id,
            subscription_id=active.id,
            external_transaction_id="cs_paid",
            amount=Decimal("9.99"),
            status="completed",
            paid_at=now,
        )
    )
    db.add(
        PaymentTransaction(
            user_id=pending_user.id,
            subscription_id=pending.id,
            external_transaction_id="cs_open",
            amount=Decimal("9.99"),
            status="pending",
        )
    )
    db.commit()

    response = client.get(f"/api/v1/admin/plans/{plan.id}/statistics", headers=auth_headers(admin))

    assert response.status_code == 200
    stats = response.json()
    assert stats["total_subscriptions"] == 3
    assert stats["active_subscriptions"] == 1
    assert stats["expired_subscriptions"] == 1
    assert stats["pending_subscriptions"] == 1
    assert stats["cancelled_subscriptions"] == 0
    assert Decimal(stats["total_revenue"]) == Decimal("9.99")
