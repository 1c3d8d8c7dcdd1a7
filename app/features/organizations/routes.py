"""
Organization feature routes: onboarding, members and subscription.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.database.locks import locked_organization
from app.features.users.models import User
from app.features.users.dependencies import get_current_user
from app.features.organizations.models import Organization, OrganizationMember
from app.features.organizations.schemas import (
    OrganizationCreate,
    OrganizationUpdate,
    OrganizationResponse,
    MemberCreate,
    MemberResponse,
    SubscriptionChange,
    SubscriptionResponse,
)
from app.features.organizations.dependencies import get_organization_by_id
from app.features.organizations.service import create_organization as onboard_organization
from app.features.permissions.constants import AdminPermission
from app.features.permissions.dependencies import require_membership, require_permission, create_audit_log
from app.features.permissions.models import Role
from app.features.plans.models import Subscription
from app.features.plans.service import PlanNotFound, PlanResolver


router = APIRouter(tags=["organizations"])


def _organization_response(organization: Organization) -> OrganizationResponse:
    response = OrganizationResponse.model_validate(organization)
    response.member_count = sum(1 for m in organization.members if m.is_active)
    return response


def _member_response(member: OrganizationMember) -> MemberResponse:
    response = MemberResponse.model_validate(member)
    response.role_name = member.role.name if member.role else None
    return response


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        organization_id=subscription.organization_id,
        plan_id=subscription.plan_id,
        plan_code=subscription.plan.code,
        status=subscription.status.value,
        started_at=subscription.started_at,
        ended_at=subscription.ended_at,
    )


@router.post("/", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(
    org_data: OrganizationCreate,
    request: Request,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Create an organization.

    The caller becomes its owner (super-admin). The organization starts on
    the default plan with every core module active.
    """
    organization = await onboard_organization(db, org_data.name, owner_id=user.id)
    await create_audit_log(
        db,
        user_id=user.id,
        action="create",
        resource_type="organization",
        resource_id=organization.id,
        organization_id=organization.id,
        details={"name": organization.name},
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()
    return _organization_response(organization)


@router.get("/", response_model=list[OrganizationResponse])
async def list_my_organizations(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Organizations where the current user is an active member."""
    result = await db.execute(
        select(Organization)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .where(
            OrganizationMember.user_id == user.id,
            OrganizationMember.is_active.is_(True),
            Organization.is_active.is_(True),
        )
        .order_by(Organization.name)
    )
    return [_organization_response(org) for org in result.scalars().all()]


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_membership)]
):
    return _organization_response(organization)


@router.patch("/{organization_id}", response_model=OrganizationResponse)
async def update_organization(
    update_data: OrganizationUpdate,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_permission(AdminPermission.MEMBERS_MANAGE))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    if update_data.name is not None:
        organization.name = update_data.name
    await db.commit()
    return _organization_response(organization)


# Members
@router.get("/{organization_id}/members", response_model=list[MemberResponse])
async def list_members(
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_membership)]
):
    return [_member_response(m) for m in organization.members]


@router.post("/{organization_id}/members", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
async def add_member(
    member_data: MemberCreate,
    request: Request,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    user: Annotated[User, Depends(require_permission(AdminPermission.MEMBERS_MANAGE))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Add an existing user to the organization (requires organization.members.manage)."""
    if await db.get(User, member_data.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if member_data.role_id is not None:
        role = await db.get(Role, member_data.role_id)
        if role is None or role.organization_id not in (None, organization.id):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Role not found in this organization"
            )

    member = OrganizationMember(
        user_id=member_data.user_id,
        organization_id=organization.id,
        role_id=member_data.role_id,
        is_super_admin=member_data.is_super_admin,
    )
    db.add(member)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User is already a member of this organization"
        )
    await db.refresh(member, ["role"])

    await create_audit_log(
        db,
        user_id=user.id,
        action="add_member",
        resource_type="organization_member",
        resource_id=member.id,
        organization_id=organization.id,
        details=member_data.model_dump(),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    await db.commit()
    return _member_response(member)


@router.delete("/{organization_id}/members/{user_id}")
async def deactivate_member(
    user_id: str,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    user: Annotated[User, Depends(require_permission(AdminPermission.MEMBERS_MANAGE))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Deactivate a membership. The row is kept; the user loses every permission here."""
    member = next((m for m in organization.members if m.user_id == user_id), None)
    if member is None or not member.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Member not found in this organization"
        )
    if member.user_id == user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot remove yourself from the organization"
        )

    member.is_active = False
    await create_audit_log(
        db,
        user_id=user.id,
        action="remove_member",
        resource_type="organization_member",
        resource_id=member.id,
        organization_id=organization.id,
    )
    await db.commit()
    return {"message": "Member removed successfully"}


# Subscription
@router.get("/{organization_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    _user: Annotated[User, Depends(require_membership)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    subscription = await PlanResolver(db).get_active_subscription(organization.id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization has no active subscription"
        )
    return _subscription_response(subscription)


@router.put("/{organization_id}/subscription", response_model=SubscriptionResponse)
async def change_subscription(
    change: SubscriptionChange,
    request: Request,
    organization: Annotated[Organization, Depends(get_organization_by_id)],
    user: Annotated[User, Depends(require_permission(AdminPermission.SUBSCRIPTION_MANAGE))],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """
    Move the organization to another plan.

    Paid modules above a lower ceiling stay active until the reconciler runs.
    """
    try:
        async with locked_organization(db, organization.id):
            subscription = await PlanResolver(db).change_plan(organization.id, change.plan_code)
            await create_audit_log(
                db,
                user_id=user.id,
                action="change_plan",
                resource_type="subscription",
                resource_id=subscription.id,
                organization_id=organization.id,
                details={"plan_code": subscription.plan.code},
                ip_address=request.client.host if request.client else None,
                user_agent=request.headers.get("user-agent"),
            )
    except PlanNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    return _subscription_response(subscription)
