"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the
worker, the gateway client and the admin API.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes, persisted on failed messages and returned by the API"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"

    # Message errors (2xxx)
    MESSAGE_NOT_FOUND = "ERR_2001"
    MESSAGE_INVALID_STATUS = "ERR_2005"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"

    # Delivery precondition errors (7xxx) — לא יעברו מעצמן, נספרות כניסיון כושל
    MEDIA_NOT_FOUND = "ERR_7001"
    DELIVERY_RECORD_MISSING = "ERR_7002"
    MEDIA_CARDINALITY = "ERR_7003"
    VENDOR_NOT_CONFIGURED = "ERR_7004"
    CREDENTIAL_DECRYPTION_FAILED = "ERR_7005"
    RECIPIENT_MISSING = "ERR_7006"
    CLAIM_EXPIRED = "ERR_7007"


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


class MessageNotFoundError(NotFoundException):
    """Raised when a queued message id does not exist"""

    def __init__(self, message_id: str):
        super().__init__("Message", message_id, error_code=ErrorCode.MESSAGE_NOT_FOUND)


class MessageStatusError(AppException):
    """Raised when a message has the wrong status for an operation"""

    def __init__(self, message_id: str, current_status: str, required_status: str):
        super().__init__(
            message=f"Message {message_id} has status '{current_status}', required '{required_status}'",
            error_code=ErrorCode.MESSAGE_INVALID_STATUS,
            status_code=409,
            details={
                "message_id": message_id,
                "current_status": current_status,
                "required_status": required_status,
            }
        )


class DeliveryPreconditionError(AppException):
    """
    Base for local failures detected before the gateway is called.

    These never resolve by themselves, so the worker books them as a failed
    attempt immediately instead of contacting the provider.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        message_id: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )
        if message_id:
            self.details["message_id"] = message_id


class MediaNotFoundError(DeliveryPreconditionError):
    def __init__(self, message_id: str):
        super().__init__(
            message="Media not found",
            error_code=ErrorCode.MEDIA_NOT_FOUND,
            message_id=message_id,
        )


class DeliveryRecordMissingError(DeliveryPreconditionError):
    def __init__(self, message_id: str):
        super().__init__(
            message="Delivery record missing",
            error_code=ErrorCode.DELIVERY_RECORD_MISSING,
            message_id=message_id,
        )


class MediaCardinalityError(DeliveryPreconditionError):
    """Raised when a message carries more media/delivery rows than the producer contract allows"""

    def __init__(self, message_id: str, media_count: int, delivery_count: int):
        super().__init__(
            message=(
                f"Expected one media and one delivery, found "
                f"{media_count} media and {delivery_count} deliveries"
            ),
            error_code=ErrorCode.MEDIA_CARDINALITY,
            message_id=message_id,
            details={"media_count": media_count, "delivery_count": delivery_count},
        )


class VendorNotConfiguredError(DeliveryPreconditionError):
    def __init__(self, vendor_id: str, message_id: str | None = None):
        super().__init__(
            message="WhatsApp not configured for vendor",
            error_code=ErrorCode.VENDOR_NOT_CONFIGURED,
            message_id=message_id,
            details={"vendor_id": vendor_id},
        )


class CredentialDecryptionError(DeliveryPreconditionError):
    """Raised when a stored access token cannot be decrypted (wrong key / tampered data)"""

    def __init__(self, reason: str = "Failed to decrypt access token"):
        super().__init__(
            message=reason,
            error_code=ErrorCode.CREDENTIAL_DECRYPTION_FAILED,
        )


class RecipientMissingError(DeliveryPreconditionError):
    def __init__(self, message_id: str | None = None):
        super().__init__(
            message="Lead phone number missing",
            error_code=ErrorCode.RECIPIENT_MISSING,
            message_id=message_id,
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
    """Raised when the WhatsApp Cloud API fails with a transient error"""

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
        יצירת WhatsAppError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: send_image, send_template)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
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


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
