"""Exception hierarchy surfaced to the HTTP layer."""

from __future__ import annotations

from typing import Any

__all__ = ["ProxyError", "RequestValidationError", "UpstreamError"]


class ProxyError(Exception):
    """Base class for errors that map onto an OpenAI-style error response."""

    status_code: int = 500
    error_type: str = "internal_server_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type, "code": None}}


class RequestValidationError(ProxyError):
    """Raised before any network or tool activity when a request is malformed."""

    status_code = 400
    error_type = "invalid_request_error"


class UpstreamError(ProxyError):
    """Raised when the remote inference endpoint answers with a failure."""

    error_type = "upstream_error"

    def __init__(self, message: str, *, upstream_status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body
        if upstream_status is not None and 400 <= upstream_status < 500:
            self.status_code = upstream_status
        else:
            self.status_code = 502
