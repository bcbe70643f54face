"""Core exceptions for the gateway.

Every failure that leaves the executor is a ``ProxyError`` subclass. Each
carries the HTTP status and Anthropic error type the inbound transport should
use, and can render itself as the client-protocol error envelope.
"""

from typing import Any, Optional


class ProxyError(Exception):
    """Base exception for gateway errors."""

    status_code = 500
    error_type = "api_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Render the Anthropic error envelope for this error."""
        return {
            "type": "error",
            "error": {"type": self.error_type, "message": self.message},
        }


class ConfigurationError(ProxyError):
    """Raised when there's an issue with the configuration."""
    pass


class ConversionError(ProxyError):
    """Raised when a request contains content that cannot be mapped upstream."""

    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, message: str, block_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.block_type = block_type


class NetworkError(ProxyError):
    """Connect, timeout or reset while talking to the upstream."""

    status_code = 502
    retryable = True

    def __init__(self, message: str, is_timeout: bool = False) -> None:
        super().__init__(message)
        self.is_timeout = is_timeout
        if is_timeout:
            self.status_code = 504


class RateLimitError(ProxyError):
    """Quota exhaustion reported by the upstream (global or per model)."""

    status_code = 429
    error_type = "rate_limit_error"

    def __init__(
        self,
        message: str,
        reset_ms: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.reset_ms = reset_ms
        self.model_id = model_id


class AuthError(ProxyError):
    """Credential rejected; the account needs re-authorization."""

    status_code = 401
    error_type = "authentication_error"

    def __init__(self, message: str, email: Optional[str] = None) -> None:
        super().__init__(message)
        self.email = email


class ApiError(ProxyError):
    """Upstream rejected the request itself (4xx other than auth/quota)."""

    error_type = "invalid_request_error"

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
        if status_code == 403:
            self.error_type = "permission_error"
        elif status_code == 404:
            self.error_type = "not_found_error"


class UpstreamFault(ProxyError):
    """Upstream returned a 5xx."""

    status_code = 502
    retryable = True

    def __init__(self, message: str, upstream_status: int = 500) -> None:
        super().__init__(message)
        self.upstream_status = upstream_status
        if upstream_status in (503, 529):
            self.error_type = "overloaded_error"


class NoAccountsError(ProxyError):
    """No enabled, valid account exists to serve the request."""

    status_code = 503
    error_type = "overloaded_error"
