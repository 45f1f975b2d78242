"""
Ledger Errors
Exception types raised by the engine and the failure-result shape returned
to callers.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for every failure the engine reports to its callers."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_result(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message, "error": type(self).__name__}


class ValidationError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


class ConstraintViolation(LedgerError):
    pass


class ApprovalRequiredError(LedgerError):
    """The mutation was deferred to an approval request, not refused."""

    def __init__(self, message: str, request_id: int, required_role: Optional[str] = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.required_role = required_role

    def as_result(self) -> Dict[str, Any]:
        result = super().as_result()
        result.update(
            {
                "success": True,
                "requires_approval": True,
                "request_id": self.request_id,
                "required_role": self.required_role,
            }
        )
        return result


class ExceedsBudget(LedgerError):
    def __init__(self, message: str, budget_status: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.budget_status = budget_status or {}

    def as_result(self) -> Dict[str, Any]:
        result = super().as_result()
        result["budget_status"] = self.budget_status
        return result
