"""Model family classification and model-name resolution."""

from __future__ import annotations

import re
from enum import Enum
from typing import Mapping, Optional


class ModelFamily(str, Enum):
    """Upstream model families with distinct signature rules.

    CLAUDE carries the thinking signature on the thinking part itself.
    GEMINI carries it on the function-call part that follows the thought.
    """

    CLAUDE = "claude"
    GEMINI = "gemini"


class AuthType(str, Enum):
    ANTIGRAVITY = "antigravity"
    GEMINI_CLI = "gemini-cli"


# Prefix a client can put on a model name to force Gemini CLI credentials.
GEMINI_CLI_PREFIX = "gc/"

DEFAULT_MODEL_ALIASES: dict[str, dict[str, str]] = {
    AuthType.GEMINI_CLI.value: {
        "gemini-3-flash": "gemini-3-flash-preview",
        "gemini-3-pro-low": "gemini-3-pro-preview",
        "gemini-3-pro-high": "gemini-3-pro-preview",
    },
}

_GEMINI_VERSION_RE = re.compile(r"gemini-(\d+)")


def get_model_family(model: str) -> ModelFamily:
    """Classify a model name. Anything that is not Gemini is treated as Claude."""
    if "gemini" in (model or "").lower():
        return ModelFamily.GEMINI
    return ModelFamily.CLAUDE


def is_thinking_model(model: str) -> bool:
    """Return True if the model produces thinking output."""
    lower = (model or "").lower()
    if get_model_family(lower) is ModelFamily.CLAUDE:
        return "thinking" in lower
    if "thinking" in lower:
        return True
    match = _GEMINI_VERSION_RE.search(lower)
    return bool(match and int(match.group(1)) >= 3)


def strip_model_prefix(model: str) -> str:
    if model.startswith(GEMINI_CLI_PREFIX):
        return model[len(GEMINI_CLI_PREFIX):]
    return model


def resolve_upstream_model(
    model: str,
    auth_type: Optional[str] = None,
    aliases: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> str:
    """Map a client model name to the name the upstream expects.

    Strips the ``gc/`` prefix and applies the alias table of the credential's
    auth type, e.g. ``gemini-3-flash`` -> ``gemini-3-flash-preview`` for
    Gemini CLI credentials.
    """
    resolved = strip_model_prefix(model or "")
    table = DEFAULT_MODEL_ALIASES if aliases is None else aliases
    if auth_type and auth_type in table:
        resolved = table[auth_type].get(resolved, resolved)
    return resolved
