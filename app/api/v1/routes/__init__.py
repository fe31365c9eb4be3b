from fastapi import APIRouter

from app.api.v1.routes import admin, checkout, coupons, plans, subscription, webhooks

router = APIRouter()
router.include_router(checkout.router, prefix="/checkout")
router.include_router(webhooks.router, prefix="/webhooks")
router.include_router(coupons.router, prefix="/coupons")
router.include_router(plans.router, prefix="/plans")
router.include_router(subscription.router, prefix="/subscription")
router.include_router(admin.router, prefix="/admin")
