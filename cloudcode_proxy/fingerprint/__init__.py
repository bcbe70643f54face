"""Per-account device fingerprints."""

from .generator import (
    build_fingerprint_headers,
    collect_current_fingerprint,
    generate_fingerprint,
)

__all__ = [
    "build_fingerprint_headers",
    "collect_current_fingerprint",
    "generate_fingerprint",
]
