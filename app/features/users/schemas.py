"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class UserUpdate(BaseModel):
    """Schema for updating user information."""
    name: str | None = Field(None, min_length=1, max_length=255)


class MembershipSummary(BaseModel):
    organization_id: str
    role_id: str | None = None
    is_super_admin: bool
    is_active: bool

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    """Schema for user responses."""
    id: str
    email: str
    name: str
    is_active: bool
    is_admin: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    memberships: list[MembershipSummary] = []

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}
