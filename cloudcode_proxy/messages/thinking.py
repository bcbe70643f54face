"""Thinking-block utilities shared by the request and response translators."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from ..core.models import ModelFamily
from ..core.signatures import (
    SKIP_SIGNATURE_SENTINEL,
    SignatureCache,
    is_valid_signature,
    thinking_fingerprint,
    tool_call_fingerprint,
)

logger = logging.getLogger("cloudcode-proxy")

THINKING_TYPES = frozenset({"thinking", "redacted_thinking"})
TOOL_TYPES = frozenset({"tool_use", "tool_result"})


def strip_cache_control(value: Any) -> Any:
    """Return a copy of ``value`` without any ``cache_control`` key, at any depth."""
    if isinstance(value, Mapping):
        return {
            key: strip_cache_control(item)
            for key, item in value.items()
            if key != "cache_control"
        }
    if isinstance(value, list):
        return [strip_cache_control(item) for item in value]
    return value


def repair_thinking_order(blocks: list[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Drop thinking blocks that follow a tool block in the same assistant turn.

    The upstream requires thinking to precede tool calls within a turn.
    Clients can produce the reverse by truncating or editing history; those
    blocks are dropped (a lossy repair) instead of failing the request.
    """
    repaired: list[Mapping[str, Any]] = []
    seen_tool = False
    dropped = 0
    for block in blocks:
        block_type = block.get("type")
        if block_type in TOOL_TYPES:
            seen_tool = True
        elif block_type in THINKING_TYPES and seen_tool:
            dropped += 1
            continue
        repaired.append(block)
    if dropped:
        logger.warning(
            "Dropped %d thinking block(s) positioned after a tool block", dropped
        )
    return repaired


def resolve_thinking_signature(
    block: Mapping[str, Any],
    ordinal: int,
    session_id: str,
    cache: Optional[SignatureCache],
) -> Optional[str]:
    """Signature for a replayed thinking block, recovered from the cache if stripped."""
    signature = block.get("signature")
    if is_valid_signature(signature):
        return signature
    if cache is None:
        return None
    recovered = cache.get(thinking_fingerprint(block.get("thinking", ""), ordinal, session_id))
    if recovered:
        logger.debug("Recovered thinking signature for block %d", ordinal)
    return recovered


def resolve_tool_call_signature(
    block: Mapping[str, Any],
    session_id: str,
    cache: Optional[SignatureCache],
) -> str:
    """Signature for a replayed Gemini function call, or the skip sentinel."""
    for key in ("signature", "thoughtSignature"):
        if is_valid_signature(block.get(key)):
            return block[key]
    tool_id = block.get("id")
    if cache is not None and tool_id:
        recovered = cache.get(tool_call_fingerprint(tool_id, session_id))
        if recovered:
            logger.debug("Recovered function-call signature for %s", tool_id)
            return recovered
    return SKIP_SIGNATURE_SENTINEL


def remember_signatures(
    blocks: Iterable[Mapping[str, Any]],
    session_id: str,
    family: ModelFamily,
    cache: Optional[SignatureCache],
    signatures_by_tool_id: Optional[Mapping[str, str]] = None,
) -> int:
    """Store signatures of a finished response so the next turn can restore them."""
    if cache is None:
        return 0
    stored = 0
    ordinal = 0
    for block in blocks:
        block_type = block.get("type")
        if block_type == "thinking":
            signature = block.get("signature")
            if family is ModelFamily.CLAUDE and is_valid_signature(signature):
                cache.put(
                    thinking_fingerprint(block.get("thinking", ""), ordinal, session_id),
                    signature,
                )
                stored += 1
            ordinal += 1
        elif block_type == "tool_use" and signatures_by_tool_id:
            signature = signatures_by_tool_id.get(block.get("id", ""))
            if is_valid_signature(signature):
                cache.put(tool_call_fingerprint(block["id"], session_id), signature)
                stored += 1
    return stored
