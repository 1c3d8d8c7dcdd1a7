"""
Reconciliation routes (platform admins only).
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.results import OperationResult
from app.features.organizations.dependencies import get_organization_by_id
from app.features.organizations.models import Organization
from app.features.reconciliation.schemas import AuditReport, RepairBatchRequest, RepairBatchResponse
from app.features.reconciliation.service import Reconciler
from app.features.users.dependencies import get_current_admin_user
from app.features.users.models import User


router = APIRouter(tags=["reconciliation"])


@router.get("/audit", response_model=AuditReport)
async def audit_organizations(
    _admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Report organizations whose entitlements drifted. Changes nothing."""
    return await Reconciler(db).audit()


@router.post("/organizations/{organization_id}/repair", response_model=OperationResult)
async def repair_organization(
    response: Response,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    result = await Reconciler(db, actor_id=admin.id).repair(organization.id)
    response.status_code = result.http_status
    return result


@router.post("/repair", response_model=RepairBatchResponse)
async def repair_organizations(
    request_data: RepairBatchRequest,
    admin: Annotated[User, Depends(get_current_admin_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Repair the given organizations, or every organization the audit reports.

    Failures are reported per organization and do not stop the batch.
    """
    results = await Reconciler(db, actor_id=admin.id).repair_all(request_data.organization_ids)
    failed = sum(1 for result in results.values() if not result.success)
    return RepairBatchResponse(results=results, repaired=len(results) - failed, failed=failed)
