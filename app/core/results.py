"""
Structured operation results.

Entitlement and reconciliation operations report failures as values instead of
raising across the service boundary; callers render `message` directly.
"""
import enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class ResultCode(str, enum.Enum):
    """Why an operation failed."""
    MODULE_NOT_FOUND = "module_not_found"
    MODULE_UNAVAILABLE = "module_unavailable"
    ALREADY_ACTIVE = "already_active"
    NOT_ACTIVE = "not_active"
    CORE_MODULE_PROTECTED = "core_module_protected"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL_ERROR = "internal_error"


HTTP_STATUS_BY_CODE = {
    ResultCode.MODULE_NOT_FOUND: 404,
    ResultCode.MODULE_UNAVAILABLE: 409,
    ResultCode.ALREADY_ACTIVE: 409,
    ResultCode.NOT_ACTIVE: 409,
    ResultCode.CORE_MODULE_PROTECTED: 403,
    ResultCode.QUOTA_EXCEEDED: 402,
    ResultCode.INTERNAL_ERROR: 500,
}


class OperationResult(BaseModel):
    """Outcome of a state-changing operation."""
    success: bool
    message: str
    code: Optional[ResultCode] = Field(None, description="Failure reason; null on success")
    data: Optional[dict[str, Any]] = None

    @classmethod
    def ok(cls, message: str, **data: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data or None)

    @classmethod
    def fail(cls, code: ResultCode, message: str, **data: Any) -> "OperationResult":
        return cls(success=False, message=message, code=code, data=data or None)

    @property
    def http_status(self) -> int:
        if self.success or self.code is None:
            return 200
        return HTTP_STATUS_BY_CODE.get(self.code, 400)
