"""
Custom Exception Hierarchy

Typed exceptions shared by the webhook pipeline, the fulfillment engine and the
operator API. The retry executor decides what is retryable from this hierarchy.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"

    # Webhook errors (2xxx)
    INVALID_SIGNATURE = "ERR_2001"

    # Fulfillment errors (3xxx)
    ORDER_NOT_FOUND = "ERR_3001"
    INVARIANT_VIOLATION = "ERR_3003"
    BUSINESS_RULE = "ERR_3004"

    # Failed job errors (4xxx)
    FAILED_JOB_NOT_FOUND = "ERR_4001"
    FAILED_JOB_INVALID_STATE = "ERR_4002"
    FAILED_JOB_MAX_ATTEMPTS = "ERR_4003"

    # External service / reliability errors (5xxx)
    EMAIL_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    TRANSIENT_ERROR = "ERR_5005"
    MAX_RETRIES_EXCEEDED = "ERR_5006"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ============================================================================
# Webhook ingress
# ============================================================================

class WebhookSignatureError(AppException):
    """Raised when the payment signature header is missing, malformed or wrong"""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid webhook signature: {reason}",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=400,
            details={"reason": reason}
        )


# ============================================================================
# Transient failures (retryable)
# ============================================================================

class TransientError(AppException):
    """
    שגיאה זמנית - מותר לנסות שוב.

    כל שגיאת רשת, timeout או תשובת 5xx/429 מספק חיצוני צריכה להיות עטופה
    בסוג הזה (או בתת-מחלקה) כדי שמנגנון ה-retry יזהה אותה.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.TRANSIENT_ERROR,
            status_code=503,
            details=details
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.service_name = service_name
        self.details["service"] = service_name


class EmailDeliveryError(ExternalServiceException):
    """Raised when the email provider rejects or fails a send"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="email",
            message=f"Email API error: {message}",
            error_code=ErrorCode.EMAIL_ERROR,
            details=details
        )

    @property
    def provider_status(self) -> int | None:
        return self.details.get("status_code")

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "EmailDeliveryError":
        """
        יצירת EmailDeliveryError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: send)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


class MaxRetriesExceededError(AppException):
    """Raised when every retry attempt failed; wraps the last error"""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(
            message=f"Operation failed after {attempts} attempts: {last_error}",
            error_code=ErrorCode.MAX_RETRIES_EXCEEDED,
            status_code=503,
            details={
                "attempts": attempts,
                "last_error_type": type(last_error).__name__,
            }
        )
        self.attempts = attempts
        self.last_error = last_error


# ============================================================================
# Business rule / invariant violations (never retried)
# ============================================================================

class BusinessRuleError(AppException):
    """Base for errors that retrying cannot fix"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.BUSINESS_RULE,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class OrderNotFoundError(BusinessRuleError):
    """Raised when no order matches a provider reference"""

    def __init__(self, reference: str):
        super().__init__(
            message=f"Order not found for reference: {reference}",
            error_code=ErrorCode.ORDER_NOT_FOUND,
            status_code=404,
            details={"reference": reference}
        )


class InvariantViolationError(BusinessRuleError):
    """Raised when persisted state contradicts what the caller expected"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVARIANT_VIOLATION,
            status_code=409,
            details=details
        )


# ============================================================================
# Failed jobs (operator surface)
# ============================================================================

class FailedJobNotFoundError(NotFoundException):
    """Raised when a failed job id does not exist"""

    def __init__(self, job_id: int):
        super().__init__(
            resource="Failed job",
            identifier=job_id,
            error_code=ErrorCode.FAILED_JOB_NOT_FOUND
        )


class FailedJobStateError(AppException):
    """Raised when a failed job is not in a state that allows the action"""

    def __init__(
        self,
        job_id: int,
        message: str,
        error_code: ErrorCode = ErrorCode.FAILED_JOB_INVALID_STATE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        self.details["job_id"] = job_id
