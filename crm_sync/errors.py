"""Error taxonomy for the integration engine.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, so routers never need to translate exceptions by hand.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class IntegrationError(Exception):
    """Base class for all integration engine errors."""

    code = "INTEGRATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(IntegrationError):
    """Malformed configuration or credentials."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(IntegrationError):
    """The requested change collides with existing state."""

    code = "CONFLICT"
    status_code = 409


class NotFoundError(IntegrationError):
    """Tenant-scoped lookup miss, including cross-tenant access attempts."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[Any] = None) -> None:
        message = f"{resource} not found"
        if resource_id is not None:
            message = f"{resource} {resource_id} not found"
        super().__init__(message, {"resource": resource, "resource_id": str(resource_id) if resource_id else None})


class ProviderError(IntegrationError):
    """HTTP or network failure talking to a CRM provider."""

    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}", {"provider": provider, "status_code": status_code})
        self.provider = provider
        self.provider_status = status_code


class CircuitOpenError(IntegrationError):
    """The provider's circuit breaker is rejecting calls."""

    code = "CIRCUIT_OPEN"
    status_code = 503

    def __init__(self, name: str, retry_after: float = 0.0) -> None:
        super().__init__(
            f"Circuit breaker is open for {name}",
            {"circuit": name, "retry_after": round(retry_after, 3)},
        )
        self.name = name
        self.retry_after = retry_after


class RateLimitExceededError(IntegrationError):
    """A provider quota could not be satisfied in time."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, name: str, retry_after: Optional[float] = None) -> None:
        message = f"Rate limit exceeded for {name}"
        if retry_after is not None:
            message = f"{message} (retry after {retry_after:.1f}s)"
        super().__init__(message, {"limiter": name, "retry_after": retry_after})
        self.name = name
        self.retry_after = retry_after
