"""
Schemas for audit reports and repair results.
"""
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from app.core.results import OperationResult


class QuotaOverrun(BaseModel):
    organization_id: str
    current_modules: int
    max_allowed: int


class AuditReport(BaseModel):
    """Organizations that drifted from the entitlement invariants."""
    organizations_without_subscription: List[str] = []
    organizations_with_duplicate_subscriptions: List[str] = []
    organizations_exceeding_quota: List[QuotaOverrun] = []
    organizations_missing_core_modules: List[str] = []

    @property
    def organization_ids(self) -> List[str]:
        """Every organization named in the report, once, sorted."""
        ids = set(self.organizations_without_subscription)
        ids.update(self.organizations_with_duplicate_subscriptions)
        ids.update(item.organization_id for item in self.organizations_exceeding_quota)
        ids.update(self.organizations_missing_core_modules)
        return sorted(ids)

    @property
    def is_clean(self) -> bool:
        return not self.organization_ids


class RepairBatchRequest(BaseModel):
    organization_ids: Optional[List[str]] = Field(
        None, description="Organizations to repair; omit to repair everything the audit reports"
    )


class RepairBatchResponse(BaseModel):
    results: Dict[str, OperationResult]
    repaired: int
    failed: int
