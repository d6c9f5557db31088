from __future__ import annotations

from typing import Optional

RATE_LIMIT_REJECTION_MESSAGE = "Rate limit exceeded. Please try again later."


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    The base class answers validation_error (400). Each subclass pins an
    HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - upstream_error (503)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Credential missing, invalid or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class RateLimitExceeded(RateLimitedError):
    """Chat admission denied by the sliding-window gate.

    Rendered with the fixed ``{"error": ...}`` body rather than the envelope.
    """

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            RATE_LIMIT_REJECTION_MESSAGE, detail={"retry_after": retry_after}
        )
        self.retry_after = retry_after


class ServiceUnavailableError(ServiceError):
    """A required dependency is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class UpstreamError(ServiceError):
    """The model provider call failed (503).

    ``upstream_status`` and ``upstream_message`` are taken from the provider
    response when one was received; ``endpoint`` is the request target.
    """

    status_code = 503
    error_code = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        upstream_message: Optional[str] = None,
        endpoint: Optional[str] = None,
    ) -> None:
        detail = {}
        if upstream_status is not None:
            detail["upstream_status"] = upstream_status
        super().__init__(message, detail=detail)
        self.upstream_status = upstream_status
        self.upstream_message = upstream_message
        self.endpoint = endpoint


__all__ = [
    "RATE_LIMIT_REJECTION_MESSAGE",
    "ServiceError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "RateLimitExceeded",
    "ServiceUnavailableError",
    "UpstreamError",
]
