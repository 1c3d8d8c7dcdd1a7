"""
Pydantic schemas for subscription plans.
"""
from decimal import Decimal
from typing import Any, Dict
from pydantic import BaseModel, ConfigDict


class PlanResponse(BaseModel):
    id: int
    code: str
    name: str
    price_usd_month: Decimal
    price_usd_year: Decimal
    trial_days: int
    max_modules: int
    max_branches: int
    features: Dict[str, Any] = {}
    is_active: bool

    model_config = ConfigDict(from_attributes=True)
