"""
InvoiceFlow Error Handling

Specific error types with user-friendly messages and debugging context.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_ACTION = "INVALID_ACTION"
    WORKFLOW_BLOCKED = "WORKFLOW_BLOCKED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"

    # Auth errors (401/403)
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"

    # Lookup / concurrency
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Processing errors (500s)
    DATABASE_ERROR = "DATABASE_ERROR"


STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.INVALID_ACTION: 400,
    ErrorCode.WORKFLOW_BLOCKED: 400,
    ErrorCode.PRECONDITION_FAILED: 400,
    ErrorCode.INVARIANT_VIOLATION: 400,
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.DATABASE_ERROR: 500,
}


class InvoiceFlowError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_MAP.get(self.code, 500)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "success": False,
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(InvoiceFlowError):
    """Malformed request or submission (missing action, header total mismatch)."""

    def __init__(self, message: str, field: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.VALIDATION_FAILED,
            message=message,
            detail=detail,
            context={"field": field} if field else None
        )


class AuthenticationError(InvoiceFlowError):
    """Caller could not be identified."""

    def __init__(self, detail: str = "Provide a Bearer token"):
        super().__init__(
            code=ErrorCode.NOT_AUTHENTICATED,
            message="Not authenticated",
            detail=detail
        )


class AuthorizationError(InvoiceFlowError):
    """Caller's role may not perform the requested action."""

    def __init__(self, actor_id: str, actor_role: str, permitted_roles=None, detail: Optional[str] = None):
        permitted = sorted(str(getattr(r, "value", r)) for r in (permitted_roles or []))
        super().__init__(
            code=ErrorCode.FORBIDDEN,
            message=f"Role '{actor_role}' is not authorized for this action",
            detail=detail or (f"Required one of: {', '.join(permitted)}" if permitted else None),
            context={"actorId": actor_id, "actorRole": actor_role, "permittedRoles": permitted}
        )


class NotFoundError(InvoiceFlowError):
    """Requested record does not exist."""

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} not found",
            context={"resource": resource, "id": resource_id}
        )


class WorkflowError(InvoiceFlowError):
    """No legal transition exists for the invoice's current state."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        code: ErrorCode = ErrorCode.WORKFLOW_BLOCKED,
        detail: Optional[str] = None,
    ):
        self.current_status = current_status
        super().__init__(
            code=code,
            message=message,
            detail=detail,
            context={"currentStatus": current_status} if current_status else None
        )


class InvalidAction(WorkflowError):
    """Action has no mapping for the current status."""

    def __init__(self, action: str, current_status: str):
        super().__init__(
            f"Invalid action '{action}' for invoice status '{current_status}'",
            current_status=current_status,
            code=ErrorCode.INVALID_ACTION,
        )


class PreconditionFailed(WorkflowError):
    """Finance acted before the PM cleared the invoice."""

    def __init__(self, current_status: str, pm_status: str):
        super().__init__(
            "Finance review requires PM approval first",
            current_status=current_status,
            code=ErrorCode.PRECONDITION_FAILED,
            detail=f"pmApproval.status is {pm_status}",
        )


class InvariantViolation(WorkflowError):
    """Stored approval records describe an impossible workflow state."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(
            message,
            current_status=current_status,
            code=ErrorCode.INVARIANT_VIOLATION,
        )


class ConflictError(InvoiceFlowError):
    """Optimistic write lost a race; re-fetch and retry."""

    def __init__(self, invoice_id: str, current_status: Optional[str] = None):
        self.invoice_id = invoice_id
        self.current_status = current_status
        context: Dict[str, Any] = {"invoiceId": invoice_id, "retryable": True}
        if current_status:
            context["currentStatus"] = current_status
        super().__init__(
            code=ErrorCode.CONFLICT,
            message="Invoice was modified by a concurrent request",
            detail="Re-fetch the invoice and retry the action",
            context=context
        )


class PersistenceError(InvoiceFlowError):
    """Storage failed while committing a change."""

    def __init__(self, operation: str, detail: str):
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database error during {operation}",
            detail=detail,
            context={"operation": operation}
        )

