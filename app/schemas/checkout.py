from pydantic import BaseModel, Field
from typing import Optional


class CheckoutRequest(BaseModel):
    plan_id: int = Field(..., gt=0)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    success: bool = True
    url: str
    id: str
