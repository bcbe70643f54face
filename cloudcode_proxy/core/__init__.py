"""Core module initialization.

Only dependency-free modules are re-exported here; the executor and request
builder are imported from their own modules.
"""

from .cache import BoundedTTLCache
from .exceptions import (
    ApiError,
    AuthError,
    ConfigurationError,
    ConversionError,
    NetworkError,
    NoAccountsError,
    ProxyError,
    RateLimitError,
    UpstreamFault,
)
from .models import AuthType, ModelFamily, get_model_family, is_thinking_model, resolve_upstream_model
from .session import derive_session_id
from .signatures import SKIP_SIGNATURE_SENTINEL, SignatureCache
from .sse import detect_sse_stream_error
from .upstream import Endpoint, format_httpx_error

__all__ = [
    "ApiError",
    "AuthError",
    "AuthType",
    "BoundedTTLCache",
    "ConfigurationError",
    "ConversionError",
    "Endpoint",
    "ModelFamily",
    "NetworkError",
    "NoAccountsError",
    "ProxyError",
    "RateLimitError",
    "SKIP_SIGNATURE_SENTINEL",
    "SignatureCache",
    "UpstreamFault",
    "derive_session_id",
    "detect_sse_stream_error",
    "format_httpx_error",
    "get_model_family",
    "is_thinking_model",
    "resolve_upstream_model",
]
