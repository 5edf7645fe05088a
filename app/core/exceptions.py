"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every error carries an ErrorCode and an HTTP status so the HTTP layer can map it
without knowing the domain.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"

    # Deposit errors (2xxx)
    DEPOSIT_NOT_FOUND = "ERR_2001"
    INVALID_AMOUNT = "ERR_2002"
    UNSUPPORTED_CURRENCY = "ERR_2003"

    # External service errors (5xxx)
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    GATEWAY_DECLINED = "ERR_5005"
    REPOSITORY_UNAVAILABLE = "ERR_5006"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"
    CONCURRENT_MODIFICATION = "ERR_6004"

    # Webhook errors (7xxx)
    INVALID_SIGNATURE = "ERR_7001"


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


class ValidationError(AppException):
    """Raised when caller input is rejected; never retried"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundError(AppException):
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


class DepositNotFoundError(NotFoundError):
    """Raised when a deposit id is unknown"""

    def __init__(self, deposit_id: str):
        super().__init__("Deposit", deposit_id, error_code=ErrorCode.DEPOSIT_NOT_FOUND)
        self.deposit_id = deposit_id


class AlreadyExistsError(AppException):
    """Raised when creating a record whose id is taken"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} already exists: {identifier}",
            error_code=ErrorCode.ALREADY_EXISTS,
            status_code=409,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ConflictError(AppException):
    """Base exception for illegal transitions and lost races"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(ConflictError):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, deposit_id: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "deposit_id": deposit_id
            }
        )


class ConcurrencyConflictError(ConflictError):
    """Raised when an optimistic update lost the race; retry the whole operation"""

    def __init__(self, resource: str, identifier: Any, reason: str = "concurrent modification"):
        super().__init__(
            message=f"{resource} {identifier}: {reason}",
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            details={"resource": resource, "identifier": str(identifier), "reason": reason}
        )


class RepositoryUnavailableError(AppException):
    """Raised when the storage layer cannot be reached"""

    def __init__(self, message: str = "Repository is unavailable", details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.REPOSITORY_UNAVAILABLE,
            status_code=503,
            details=details
        )


class GatewayError(AppException):
    """Base exception for payment gateway failures"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int,
        code: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.code = code
        if code:
            self.details["gateway_code"] = code


class GatewayTerminalError(GatewayError):
    """Decline or invalid request; the deposit moves to failed and is never retried"""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        decline_code: str | None = None,
        http_status: int | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.GATEWAY_DECLINED,
            status_code=402,
            code=code,
            details={"decline_code": decline_code, "http_status": http_status}
        )
        self.decline_code = decline_code
        self.http_status = http_status


class GatewayTransientError(GatewayError):
    """Timeout, rate limit or 5xx; eligible for background retry"""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        http_status: int | None = None,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            code=code,
            details=details
        )
        self.http_status = http_status
        if http_status is not None:
            self.details["http_status"] = http_status


class CircuitBreakerOpenError(GatewayTransientError):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            details={"service": service_name, "retry_after_seconds": retry_after_seconds}
        )


class SignatureError(AppException):
    """Invalid webhook signature or timestamp; rejected and never retried"""

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=400,
            details={"reason": reason} if reason else None
        )
