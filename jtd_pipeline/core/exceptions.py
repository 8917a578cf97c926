"""
Custom Exception Hierarchy

Typed errors for the JTD pipeline. State-machine violations are raised to the
caller, never coerced into a different transition.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # External service errors (5xxx)
    PROVIDER_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # Job state machine errors (6xxx)
    JTD_NOT_FOUND = "ERR_6001"
    INVALID_TRANSITION = "ERR_6002"
    NOT_RETRYABLE = "ERR_6003"
    NOT_CANCELLABLE = "ERR_6004"
    NOT_IN_PROCESSING = "ERR_6005"
    CONFLICTING_TRANSITION = "ERR_6006"

    # Queue errors (7xxx)
    QUEUE_MESSAGE_NOT_FOUND = "ERR_7001"


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


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class JtdException(AppException):
    """Base exception for job state errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        jtd_id: str | None = None,
        status_code: int = 409,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if jtd_id:
            self.details["jtd_id"] = jtd_id


class JtdNotFoundError(JtdException):
    """Job does not exist or was soft-deleted"""

    def __init__(self, jtd_id: str):
        super().__init__(
            message=f"JTD not found: {jtd_id}",
            error_code=ErrorCode.JTD_NOT_FOUND,
            jtd_id=jtd_id,
            status_code=404,
        )


class InvalidTransitionError(JtdException):
    """(current_status, target_status) is not in the transition table"""

    def __init__(self, jtd_id: str, current_status: str, target_status: str):
        super().__init__(
            message=f"Invalid transition from '{current_status}' to '{target_status}'",
            error_code=ErrorCode.INVALID_TRANSITION,
            jtd_id=jtd_id,
            details={"current_status": current_status, "target_status": target_status},
        )


class NotRetryableError(JtdException):
    def __init__(self, jtd_id: str, current_status: str):
        super().__init__(
            message=f"JTD {jtd_id} cannot be retried from status '{current_status}'",
            error_code=ErrorCode.NOT_RETRYABLE,
            jtd_id=jtd_id,
            details={"current_status": current_status},
        )


class NotCancellableError(JtdException):
    def __init__(self, jtd_id: str, current_status: str):
        super().__init__(
            message=f"JTD {jtd_id} cannot be cancelled from status '{current_status}'",
            error_code=ErrorCode.NOT_CANCELLABLE,
            jtd_id=jtd_id,
            details={"current_status": current_status},
        )


class NotInProcessingError(JtdException):
    def __init__(self, jtd_id: str, current_status: str):
        super().__init__(
            message=f"JTD {jtd_id} is '{current_status}', force-complete requires 'processing'",
            error_code=ErrorCode.NOT_IN_PROCESSING,
            jtd_id=jtd_id,
            details={"current_status": current_status},
        )


class ConflictingTransitionError(JtdException):
    """Another actor changed the job between our read and our conditional write"""

    def __init__(self, jtd_id: str, expected_status: str, target_status: str):
        super().__init__(
            message=(
                f"JTD {jtd_id} changed concurrently: expected '{expected_status}' "
                f"before moving to '{target_status}'"
            ),
            error_code=ErrorCode.CONFLICTING_TRANSITION,
            jtd_id=jtd_id,
            details={"expected_status": expected_status, "target_status": target_status},
        )


class QueueMessageNotFoundError(JtdException):
    def __init__(self, queue_name: str, msg_id: int):
        super().__init__(
            message=f"Message {msg_id} not found in queue '{queue_name}'",
            error_code=ErrorCode.QUEUE_MESSAGE_NOT_FOUND,
            status_code=404,
            details={"queue_name": queue_name, "msg_id": msg_id},
        )


class ProviderError(AppException):
    """Raised by a transport provider when delivery fails"""

    def __init__(
        self,
        provider_code: str,
        message: str,
        provider_error_code: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=f"{provider_code} delivery error: {message}",
            error_code=ErrorCode.PROVIDER_ERROR,
            status_code=502,
            details=details
        )
        self.provider_code = provider_code
        self.provider_error_code = provider_error_code or "PROVIDER_ERROR"
        self.details["provider"] = provider_code

    @classmethod
    def from_response(
        cls,
        provider_code: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ProviderError":
        """Build a ProviderError from an HTTP response"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            provider_code=provider_code,
            message=f"gateway returned status {status_code}",
            provider_error_code=f"HTTP_{status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )
