"""
Typed errors for the billing core.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so callers catch by type instead of parsing messages:

    BillingError
    +-- ValidationError            400  missing identifying fields
    +-- NotFoundError              404  identifier resolves to nothing
    +-- ConflictError              409  nested/summary update matched nothing
    +-- UpstreamError              502  store or notifier unavailable
        +-- AutomationIncompleteError   invoice is Paid, automation can be re-run
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    code = "BILLING_ERROR"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "detail": self.details}


class ValidationError(BillingError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} not found", entity=entity, identifier=str(identifier))
        self.entity = entity
        self.identifier = identifier


class ConflictError(BillingError):
    """A targeted array-element update matched zero elements."""

    code = "CONFLICT"
    status_code = 409


class UpstreamError(BillingError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = 502

    def __init__(self, message: str, cause: Optional[BaseException] = None, **details: Any):
        super().__init__(message, **details)
        self.cause = cause
        self.timeout = bool(getattr(cause, "timeout", False))


class AutomationIncompleteError(UpstreamError):
    code = "AUTOMATION_INCOMPLETE"

    def __init__(self, invoice_id: Any, cause: Optional[BaseException] = None):
        super().__init__(
            "Invoice marked Paid but milestone automation did not finish",
            cause=cause,
            invoice_id=str(invoice_id),
            reason=str(cause) if cause else None,
        )
        self.invoice_id = invoice_id
