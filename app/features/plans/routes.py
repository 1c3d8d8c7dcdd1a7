"""
Plan catalog routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.plans.schemas import PlanResponse
from app.features.plans.service import PlanResolver


router = APIRouter(tags=["plans"])


@router.get("/", response_model=list[PlanResponse])
async def list_plans(
    db: Annotated[AsyncSession, Depends(get_db)],
    include_inactive: bool = False
):
    """List subscription plans, smallest module quota first."""
    return await PlanResolver(db).list_plans(active_only=not include_inactive)


@router.get("/{plan_code}", response_model=PlanResponse)
async def get_plan(
    plan_code: str,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    plan = await PlanResolver(db).get_plan_by_code(plan_code)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Plan not found"
        )
    return plan
