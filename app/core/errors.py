"""
Domain errors raised by the workflow services.

Each error knows the HTTP status it maps to; app.main turns them into
structured JSON responses.
"""
from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    http_status = 500
    code = "unexpected_error"
    default_detail = "The operation could not be completed"

    def __init__(self, detail: Optional[str] = None, **payload: Any):
        self.detail = detail or self.default_detail
        self.payload = payload
        super().__init__(self.detail)

    def to_response_payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.payload:
            body.update(self.payload)
        return body


class ValidationError(WorkflowError):
    http_status = 400
    code = "validation_error"
    default_detail = "Invalid input"


class PermissionDenied(WorkflowError):
    http_status = 403
    code = "permission_denied"
    default_detail = "Insufficient permissions"


class NotFound(WorkflowError):
    http_status = 404
    code = "not_found"
    default_detail = "Entity not found"


class Conflict(WorkflowError):
    http_status = 409
    code = "conflict"
    default_detail = "The entity is not in a state that allows this operation"


class RFQExpired(Conflict):
    code = "rfq_expired"
    default_detail = "RFQ has expired"


class PreconditionFailed(WorkflowError):
    http_status = 409
    code = "precondition_failed"
    default_detail = "Preconditions for this transition are not met"


class Unexpected(WorkflowError):
    http_status = 500
    code = "unexpected_error"
