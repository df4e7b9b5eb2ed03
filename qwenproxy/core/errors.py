"""Exceptions surfaced at the HTTP boundary."""

from typing import Any


class ProxyError(Exception):
    """Base exception for proxy errors converted into JSON responses."""

    def __init__(
        self,
        message: str,
        error_type: str = "internal_server_error",
        status_code: int = 500,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details


class ValidationError(ProxyError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(
            message=message,
            error_type="invalid_request_error",
            status_code=400,
            details=details,
        )


class AuthenticationError(ProxyError):
    """Authentication error (401)."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(
            message=message, error_type="authentication_error", status_code=401
        )


class NotFoundError(ProxyError):
    """Not found error (404)."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(message=message, error_type="not_found_error", status_code=404)


class ServiceUnavailableError(ProxyError):
    """Service unavailable error (503)."""

    def __init__(self, message: str = "Service temporarily unavailable") -> None:
        super().__init__(
            message=message, error_type="service_unavailable_error", status_code=503
        )


class UpstreamHTTPError(ProxyError):
    """Upstream answered with a client error; status and body are forwarded."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(
            message="Upstream API request failed",
            error_type="upstream_error",
            status_code=status_code,
            details=body,
        )
        self.body = body


class UpstreamConnectionError(ProxyError):
    """Upstream could not be reached or failed on its side (502)."""

    def __init__(
        self, message: str = "Failed to fetch from upstream API", details: Any = None
    ) -> None:
        super().__init__(
            message=message,
            error_type="upstream_connection_error",
            status_code=502,
            details=details,
        )
