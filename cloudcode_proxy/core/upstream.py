"""Upstream endpoint configuration and utilities."""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger("cloudcode-proxy")

GENERATE_PATH = "/v1internal:generateContent"
STREAM_GENERATE_PATH = "/v1internal:streamGenerateContent"


@dataclass
class Endpoint:
    """One Cloud Code base URL the executor can send requests to."""

    base_url: str

    @property
    def name(self) -> str:
        host = self.base_url.split("://", 1)[-1]
        return host.split(".", 1)[0]

    def build_url(self, stream: bool) -> str:
        """Build the generate URL for this endpoint."""
        base = self.base_url.rstrip("/")
        if stream:
            return f"{base}{STREAM_GENERATE_PATH}?alt=sse"
        return f"{base}{GENERATE_PATH}"


def format_httpx_error(exc: Any, url: Optional[str] = None, timeout: Optional[float] = None) -> str:
    """Produce a detailed, user-facing description of an httpx error."""
    parts = [exc.__class__.__name__]
    message = str(exc).strip()
    if message:
        parts.append(message)

    request = None
    try:
        request = getattr(exc, "request", None)
    except RuntimeError:
        # httpx raises when the exception was created without a request
        request = None
    if request is not None:
        parts.append(f"request={request.method} {request.url}")
    elif url:
        parts.append(f"url={url}")

    if isinstance(exc, httpx.TimeoutException) and timeout:
        parts.append(f"timeout={timeout}s")

    return "; ".join(parts)
