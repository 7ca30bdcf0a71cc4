"""Typed service errors carrying a structured error code.

Routes turn these into HTTPException with detail
{"error_code": ..., "message": ...}; clients branch on error_code and never
parse message text.
"""
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class ServiceError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "bad_request"

    def __init__(self, message: str, error_code: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.extra = extra or {}

    def to_http(self) -> HTTPException:
        detail = {"error_code": self.error_code, "message": self.message}
        detail.update(self.extra)
        return HTTPException(status_code=self.status_code, detail=detail)


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "session_not_found"


class InvalidStateError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "invalid_state"


class RateLimitError(ServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "rate_limit"


class ProviderError(ServiceError):
    """An upstream provider (Stripe, LLM, voice) failed."""
    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "network_error"


class ConfigurationError(ServiceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "configuration_error"
