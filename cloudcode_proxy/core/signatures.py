"""Thinking-signature recovery cache.

The client protocol drops the signature fields the upstream requires when a
conversation is replayed. Signatures returned by the upstream are remembered
here, keyed by a fingerprint of the content they belong to, so the next turn
can restore them.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, Optional

from .cache import BoundedTTLCache

logger = logging.getLogger("cloudcode-proxy")

# Tells the upstream to skip strict signature validation for a function call.
SKIP_SIGNATURE_SENTINEL = "skip_thought_signature_validator"

# Shorter values are placeholders, not real upstream signatures.
MIN_SIGNATURE_LENGTH = 50

DEFAULT_CAPACITY = 10_000
DEFAULT_TTL_SECONDS = 2 * 60 * 60


def thinking_fingerprint(text: str, ordinal: int, session_id: str) -> str:
    """Fingerprint a thinking block by its text, position and session."""
    digest = hashlib.sha256()
    digest.update(session_id.encode("utf-8"))
    digest.update(b"\x00thinking\x00")
    digest.update(str(ordinal).encode("ascii"))
    digest.update(b"\x00")
    digest.update(text.encode("utf-8"))
    return digest.hexdigest()


def tool_call_fingerprint(tool_use_id: str, session_id: str) -> str:
    """Fingerprint a function call by its id and session."""
    digest = hashlib.sha256()
    digest.update(session_id.encode("utf-8"))
    digest.update(b"\x00tool_use\x00")
    digest.update(tool_use_id.encode("utf-8"))
    return digest.hexdigest()


def is_valid_signature(signature: Optional[str]) -> bool:
    return isinstance(signature, str) and len(signature) >= MIN_SIGNATURE_LENGTH


class SignatureCache:
    """Fingerprint -> signature token store with LRU and TTL eviction."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._entries: BoundedTTLCache[str, str] = BoundedTTLCache(
            max_entries=capacity, ttl_seconds=ttl_seconds, clock=clock
        )

    def get(self, fingerprint: str) -> Optional[str]:
        return self._entries.get(fingerprint)

    def put(self, fingerprint: str, token: str) -> None:
        if not is_valid_signature(token):
            logger.debug("Ignoring short signature for fingerprint %s", fingerprint[:12])
            return
        self._entries.put(fingerprint, token)

    def evict(self) -> int:
        return self._entries.evict()

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
