"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    RATE_LIMITED = "ERR_1006"

    # Grievance errors (2xxx)
    GRIEVANCE_CREATE_FAILED = "ERR_2002"

    # Media/storage errors (3xxx)
    UNSUPPORTED_MEDIA_TYPE = "ERR_3001"
    MEDIA_TOO_LARGE = "ERR_3002"
    STORAGE_NOT_CONFIGURED = "ERR_3003"
    STORAGE_ERROR = "ERR_3004"

    # AI errors (4xxx)
    AI_PARSE_FAILED = "ERR_4001"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    LLM_ERROR = "ERR_5005"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


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


class GrievanceException(AppException):
    """Raised when a grievance cannot be persisted"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.GRIEVANCE_CREATE_FAILED,
            status_code=500,
            details=details
        )


class StorageException(AppException):
    """Base exception for media storage errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORAGE_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )


class UnsupportedMediaTypeError(StorageException):
    """Raised when the mime type is not an allowed image or document type"""

    def __init__(self, mime_type: str):
        super().__init__(
            message=f"Unsupported media type: {mime_type}",
            error_code=ErrorCode.UNSUPPORTED_MEDIA_TYPE,
            status_code=415,
            details={"mime_type": mime_type}
        )


class MediaTooLargeError(StorageException):
    """Raised when a file exceeds the size ceiling for its kind"""

    def __init__(self, size: int, max_size: int):
        super().__init__(
            message=f"File too large: {size} bytes (max {max_size})",
            error_code=ErrorCode.MEDIA_TOO_LARGE,
            status_code=413,
            details={"size": size, "max_size": max_size}
        )


class StorageNotConfiguredError(StorageException):
    """Raised when S3 credentials or bucket are missing"""

    def __init__(self):
        super().__init__(
            message="AWS S3 is not configured (S3_BUCKET_NAME / AWS_REGION)",
            error_code=ErrorCode.STORAGE_NOT_CONFIGURED,
            status_code=503,
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
        self.details["service"] = service_name


class WhatsAppError(ExternalServiceException):
    """Raised when the WhatsApp Cloud API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "WhatsAppError":
        """
        Build a WhatsAppError from an HTTP response.

        Args:
            operation: operation name (e.g. send_text, download_media)
            response: response object (e.g. httpx.Response)
            message: custom message; built from the status code when omitted
            max_response_chars: cap for the stored response body
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


class LLMError(ExternalServiceException):
    """Raised when the LLM completion call fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="llm",
            message=f"LLM error: {message}",
            error_code=ErrorCode.LLM_ERROR,
            details=details
        )


class AIParseError(AppException):
    """Raised when free-form text could not be parsed at all"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.AI_PARSE_FAILED,
            status_code=502,
            details=details
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_STATE_TRANSITION,
        user: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if user:
            self.details["user"] = user


class InvalidStateTransitionError(StateMachineException):
    """Raised when a transition is not declared in the transition table"""

    def __init__(self, current_state: str, target_state: str, user: str | None = None):
        super().__init__(
            message=f"Invalid transition from {current_state} to {target_state}",
            user=user,
            details={"current_state": current_state, "target_state": target_state}
        )
