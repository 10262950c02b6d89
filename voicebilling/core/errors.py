"""Error taxonomy shared by the billing engine.

Every failure the engine can surface to a caller or write to the audit
log is a BillingError carrying an ErrorType, a retryable flag and a
context dict with tenant/period information.
"""

from enum import Enum
from typing import Any, Optional


class ErrorType(str, Enum):
    """Failure classes used for audit entries and typed results."""
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    EXTERNAL_SERVICE = "external_service"
    PERSISTENCE = "persistence"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class BillingError(Exception):
    """Base exception for billing engine errors."""

    error_type: ErrorType = ErrorType.INTERNAL
    retryable: bool = False

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class BillingValidationError(BillingError):
    """Missing billing account, customer reference or invalid input."""
    error_type = ErrorType.VALIDATION


class DuplicateInvoiceError(BillingError):
    """A pending or paid invoice already covers the requested period."""
    error_type = ErrorType.DUPLICATE


class ExternalServiceError(BillingError):
    """External dependency failed after the retry policy was exhausted."""

    error_type = ErrorType.EXTERNAL_SERVICE

    def __init__(
        self,
        message: str,
        service: str,
        attempts: int = 1,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message, context)
        self.service = service
        self.attempts = attempts
        self.retryable = retryable
        self.context.setdefault("service", service)
        self.context.setdefault("attempts", attempts)


class CircuitOpenError(ExternalServiceError):
    """Call rejected because the dependency's circuit breaker is open."""

    def __init__(self, service: str):
        super().__init__(
            f"Circuit breaker is OPEN for {service}",
            service=service,
            attempts=0,
            retryable=True,
        )


class PersistenceError(BillingError):
    """Local store operation failed after the database retry policy."""
    error_type = ErrorType.PERSISTENCE


class InvoiceRunInProgressError(BillingError):
    """Raised when a billing run is triggered while another is running."""
    error_type = ErrorType.CONFLICT

    def __init__(self, current_job_id: Optional[str] = None):
        super().__init__(
            "Invoice generation already running",
            {"current_job_id": current_job_id} if current_job_id else None,
        )
        self.current_job_id = current_job_id


def classify_error(error: BaseException) -> ErrorType:
    """Map any exception to an ErrorType for audit and result reporting."""
    if isinstance(error, BillingError):
        return error.error_type
    return ErrorType.INTERNAL
