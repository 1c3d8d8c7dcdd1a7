"""
Pydantic schemas for module catalog and entitlement status.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class ModuleResponse(BaseModel):
    """Catalog entry."""
    code: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    is_core: bool
    rank: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class PlanSummary(BaseModel):
    """Quota-relevant plan fields shown with the module status."""
    id: int
    code: str
    name: str
    max_modules: int
    max_branches: int
    trial_days: int
    features: Dict[str, Any] = {}
    is_default_fallback: bool = Field(False, description="True when the organization has no active subscription")

    model_config = ConfigDict(from_attributes=True)


class ModuleStatus(BaseModel):
    """
    Snapshot of an organization's entitlements.

    active_modules always contains every core module code.
    """
    organization_id: str
    organization_name: str
    plan: Optional[PlanSummary]
    active_modules: List[str]
    active_modules_count: int
    paid_modules_count: int
    max_modules_allowed: int
    can_activate_more: bool
    available_modules: List[ModuleResponse]


class ModuleAccessResponse(BaseModel):
    module_code: str
    has_access: bool


class ModuleUpdate(BaseModel):
    """Catalog edit (platform admins)."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    icon: Optional[str] = Field(None, max_length=50)
    rank: Optional[int] = None
    is_active: Optional[bool] = None
