from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.repositories.plan_repository import SubscriptionPlanRepository
from app.schemas.subscription import PlansResponse
from app.services.plan_catalog import PlanCatalog

router = APIRouter(tags=["plans"])


@router.get("", response_model=PlansResponse)
def list_plans(db: Session = Depends(get_db)):
    catalog = PlanCatalog(SubscriptionPlanRepository(db))
    return {"plans": catalog.list_active()}
