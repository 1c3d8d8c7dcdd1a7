"""
Pydantic schemas for organization-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class OrganizationCreate(BaseModel):
    """Schema for creating a new organization."""
    name: str = Field(..., min_length=1, max_length=255)


class OrganizationUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)


class OrganizationResponse(BaseModel):
    """Schema for organization responses."""
    id: str
    name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    member_count: int = 0

    model_config = {"from_attributes": True}


class MemberCreate(BaseModel):
    """Add an existing user to the organization."""
    user_id: str = Field(..., description="User ULID")
    role_id: str | None = Field(None, description="Role to assign; must be shared or belong to this organization")
    is_super_admin: bool = False


class MemberResponse(BaseModel):
    id: str
    user_id: str
    organization_id: str
    role_id: str | None
    role_name: str | None = None
    is_super_admin: bool
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class SubscriptionChange(BaseModel):
    plan_code: str = Field(..., min_length=1, max_length=50)


class SubscriptionResponse(BaseModel):
    id: str
    organization_id: str
    plan_id: int
    plan_code: str
    status: str
    started_at: datetime
    ended_at: datetime | None = None
