"""Stable session identifiers for prompt-cache and account affinity."""

from __future__ import annotations

import hashlib
import uuid
from typing import Any, Mapping, Sequence, Union


def _first_user_text(messages: Sequence[Mapping[str, Any]]) -> str:
    for message in messages:
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                block.get("text", "")
                for block in content
                if isinstance(block, Mapping) and block.get("type") == "text"
            )
        return ""
    return ""


def derive_session_id(
    request: Union[Mapping[str, Any], Sequence[Mapping[str, Any]]],
) -> str:
    """Derive the session id from the first user turn of a conversation.

    Accepts either a Messages request payload or its ``messages`` list. Only
    text content counts; images, tool results and ``cache_control`` markers
    do not change the id. Returns the SHA-256 hex digest of that text, so the
    same first turn always maps to the same session. A conversation without
    any user text gets a random id.
    """
    if isinstance(request, Mapping):
        messages = request.get("messages") or []
    else:
        messages = request
    text = _first_user_text(messages)
    if not text:
        return hashlib.sha256(uuid.uuid4().bytes).hexdigest()
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
