import math
from typing import Optional, Dict, Any

from fastapi import status

from diaglab.utils.logger import get_logger

logger = get_logger("exceptions")


class BaseCustomException(Exception):
    """Base custom exception class"""
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int = 500, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def public_fields(self) -> Dict[str, Any]:
        """Extra fields that are safe to return to the client"""
        return {}

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(BaseCustomException):
    """Raised when request data is malformed"""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)


class AuthenticationError(BaseCustomException):
    """Raised when a credential is missing or invalid"""
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


class AuthorizationError(BaseCustomException):
    """Raised when the caller's role does not satisfy a requirement"""
    code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_403_FORBIDDEN, details)


class InvalidOrExpiredError(BaseCustomException):
    """Raised when a one-time code is wrong, expired, used or exhausted"""
    code = "INVALID_OR_EXPIRED"

    def __init__(
        self,
        message: str = "Invalid or expired verification code",
        attempts_remaining: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.attempts_remaining = attempts_remaining
        super().__init__(message, status.HTTP_400_BAD_REQUEST, details)

    def public_fields(self) -> Dict[str, Any]:
        if self.attempts_remaining is None:
            return {}
        return {"attemptsRemaining": self.attempts_remaining}


class NotFoundError(BaseCustomException):
    """Raised when a resource is not found"""
    code = "NOT_FOUND"

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(BaseCustomException):
    """Raised when there's a conflict (e.g., duplicate resource)"""
    code = "CONFLICT"

    def __init__(self, message: str = "Resource conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class RateLimitError(BaseCustomException):
    """Raised when rate limit is exceeded"""
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after_ms: int = 1000,
        details: Optional[Dict[str, Any]] = None
    ):
        self.retry_after_ms = max(1, int(retry_after_ms))
        super().__init__(message, status.HTTP_429_TOO_MANY_REQUESTS, details)

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))

    def public_fields(self) -> Dict[str, Any]:
        return {"retryAfter": self.retry_after_seconds}

    def headers(self) -> Optional[Dict[str, str]]:
        headers = {"Retry-After": str(self.retry_after_seconds)}
        if "limit" in self.details:
            headers["X-RateLimit-Limit"] = str(self.details["limit"])
            headers["X-RateLimit-Remaining"] = "0"
        if "reset_at" in self.details:
            headers["X-RateLimit-Reset"] = str(self.details["reset_at"])
        return headers


class InternalError(BaseCustomException):
    """Raised for unexpected server-side failures"""
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)


class DatabaseError(InternalError):
    """Raised when database operations fail"""

    def __init__(self, message: str = "Database error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class EmailError(InternalError):
    """Raised when email operations fail"""

    def __init__(self, message: str = "Email error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


def to_response_body(exc: BaseCustomException) -> Dict[str, Any]:
    """Render a custom exception as a client-safe response body"""
    if exc.status_code >= 500:
        # Never echo internal failure text to the client
        return {"error": "Internal server error", "code": exc.code}
    body = {"error": exc.message, "code": exc.code}
    body.update(exc.public_fields())
    return body


def handle_database_error(error: Exception, operation: str = "database operation") -> DatabaseError:
    """Handle database errors and return appropriate custom exception"""
    logger.error(f"Database error during {operation}: {str(error)}", exc_info=True)

    return DatabaseError(
        message=f"Database error during {operation}",
        details={"operation": operation, "original_error": str(error)}
    )


def handle_email_error(error: Exception, operation: str = "email operation") -> EmailError:
    """Handle email errors and return appropriate custom exception"""
    logger.error(f"Email error during {operation}: {str(error)}", exc_info=True)

    return EmailError(
        message=f"Email error during {operation}",
        details={"operation": operation, "original_error": str(error)}
    )
