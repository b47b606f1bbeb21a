"""
Closed error taxonomy for SafeRewriter.

Services raise these; the FastAPI exception handlers in
``saferewriter.api.server`` are the only place they become HTTP responses.
"""

from typing import Any, Optional


class APIError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code: int = 500
    code: str = "API_ERROR"

    def __init__(
        self,
        message: str = "Internal server error",
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(APIError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
            data["value"] = self.value
        return data


class AuthenticationError(APIError):
    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationError(APIError):
    status_code = 403
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class NotFoundError(APIError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")


class ConflictError(APIError):
    status_code = 409
    code = "CONFLICT"

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message)


class RateLimitError(APIError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(message)
        self.retry_after = max(0, int(retry_after))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data


# ============== UPSTREAM AI ==============


class AIServiceError(APIError):
    """Gemini rejected the request or returned something unusable."""

    status_code = 502
    code = "AI_SERVICE_ERROR"

    def __init__(self, message: str = "AI service temporarily unavailable", upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class AIAuthError(AIServiceError):
    pass


class AIParseError(AIServiceError):
    pass


class AIRateLimitError(AIServiceError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "Gemini API rate limit exceeded. Please try again later.", retry_after: int = 60):
        super().__init__(message, upstream_status=429)
        self.retry_after = max(0, int(retry_after))

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryAfter"] = self.retry_after
        return data


class NetworkError(APIError):
    """No response was received from the AI endpoint."""

    status_code = 503
    code = "NETWORK_ERROR"

    def __init__(self, message: str = "Network error: Unable to reach Gemini API"):
        super().__init__(message)


# ============== DOWNSTREAM STORES ==============


class DatabaseServiceError(APIError):
    status_code = 503
    code = "DATABASE_SERVICE_ERROR"

    def __init__(self, message: str = "Database service unavailable"):
        super().__init__(message)


class CacheServiceError(APIError):
    status_code = 503
    code = "CACHE_SERVICE_ERROR"

    def __init__(self, message: str = "Cache service unavailable"):
        super().__init__(message)


class InternalError(APIError):
    status_code = 500
    code = "INTERNAL_ERROR"
