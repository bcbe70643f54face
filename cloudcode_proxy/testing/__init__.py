"""Testing utilities for in-process gateway simulations."""

from .fake_upstream import (
    FakeCloudCode,
    UpstreamResponse,
    build_error_body,
    build_generate_response,
    build_parts,
    build_stream_events,
)

__all__ = [
    "FakeCloudCode",
    "UpstreamResponse",
    "build_error_body",
    "build_generate_response",
    "build_parts",
    "build_stream_events",
]
