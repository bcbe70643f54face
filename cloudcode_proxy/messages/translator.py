"""Anthropic Messages <-> Cloud Code (Gemini generateContent) translation.

This module translates between the Anthropic Messages API format used by
clients and the Gemini ``generateContent`` request/response format spoken by
the Cloud Code ``v1internal`` endpoints.

Key mappings:
- Anthropic system (top-level) -> systemInstruction.parts
- Anthropic messages -> contents (assistant -> "model")
- Content blocks -> parts (text, inlineData/fileData, functionCall,
  functionResponse, thought parts)
- Anthropic tools -> functionDeclarations with sanitized schemas
- Anthropic tool_choice -> toolConfig.functionCallingConfig

Thinking signatures are family specific: Claude models carry them on the
thought part, Gemini models on the function-call part. Signatures the client
stripped are restored from the signature cache (see ``thinking``).
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from ..core.exceptions import ConversionError
from ..core.models import ModelFamily, get_model_family, is_thinking_model, strip_model_prefix
from ..core.session import derive_session_id
from ..core.signatures import SignatureCache
from .schema import SchemaSanitizer, sanitize_schema
from .thinking import (
    remember_signatures,
    repair_thinking_order,
    resolve_thinking_signature,
    resolve_tool_call_signature,
    strip_cache_control,
)

logger = logging.getLogger("cloudcode-proxy")

KNOWN_BLOCK_TYPES = frozenset({
    "text",
    "image",
    "document",
    "thinking",
    "redacted_thinking",
    "tool_use",
    "tool_result",
})

# Extra output room granted above the thinking budget for Claude models.
THINKING_OUTPUT_HEADROOM = 8192


@dataclass
class Turn:
    """One conversation turn with its normalized content blocks."""

    role: str
    blocks: list[dict[str, Any]]


@dataclass
class ConversionContext:
    """Normalized view of one Messages request, ready for conversion."""

    model: str
    family: ModelFamily
    session_id: str
    turns: list[Turn] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    system_text: Optional[str] = None
    thinking_enabled: bool = False
    signature_cache: Optional[SignatureCache] = None
    # tool_use id -> tool name, for functionResponse naming
    tool_names: dict[str, str] = field(default_factory=dict)


def _normalize_content(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if content is None:
        return []
    if not isinstance(content, list):
        raise ConversionError(
            f"Unsupported message content of type {type(content).__name__}",
            block_type=type(content).__name__,
        )
    blocks: list[dict[str, Any]] = []
    for block in content:
        if isinstance(block, str):
            blocks.append({"type": "text", "text": block})
            continue
        if not isinstance(block, Mapping):
            raise ConversionError("Content block must be an object", block_type=None)
        block_type = block.get("type")
        if block_type not in KNOWN_BLOCK_TYPES:
            raise ConversionError(
                f"Unsupported content block type: {block_type}", block_type=block_type
            )
        blocks.append(dict(block))
    return blocks


def _system_to_text(system: Any) -> Optional[str]:
    """Flatten the Anthropic ``system`` parameter to plain text."""
    if system is None:
        return None
    if isinstance(system, str):
        return system or None
    if not isinstance(system, list):
        raise ConversionError("system must be a string or a list of blocks", block_type="system")

    text_parts: list[str] = []
    for block in system:
        if isinstance(block, Mapping) and block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        else:
            block_type = block.get("type") if isinstance(block, Mapping) else type(block).__name__
            logger.warning(f"Non-text block in system parameter: {block_type}")
    text = "\n".join(part for part in text_parts if part)
    return text or None


def build_conversion_context(
    payload: Mapping[str, Any],
    *,
    session_id: Optional[str] = None,
    signature_cache: Optional[SignatureCache] = None,
) -> ConversionContext:
    """Normalize a Messages request: strip cache_control, repair ordering."""
    clean = strip_cache_control(payload)
    model = strip_model_prefix(str(clean.get("model") or ""))
    thinking = clean.get("thinking")
    ctx = ConversionContext(
        model=model,
        family=get_model_family(model),
        session_id=session_id or derive_session_id(clean),
        tools=[dict(t) for t in clean.get("tools") or [] if isinstance(t, Mapping)],
        system_text=_system_to_text(clean.get("system")),
        thinking_enabled=isinstance(thinking, Mapping) and thinking.get("type") == "enabled",
        signature_cache=signature_cache,
    )

    for msg in clean.get("messages") or []:
        if not isinstance(msg, Mapping):
            raise ConversionError("Message must be an object", block_type=None)
        role = msg.get("role", "user")
        if role not in ("user", "assistant"):
            raise ConversionError(f"Unsupported message role: {role}", block_type=role)
        blocks = _normalize_content(msg.get("content"))
        if role == "assistant":
            blocks = _attach_ordinals(blocks)
            blocks = repair_thinking_order(blocks)
        ctx.turns.append(Turn(role=role, blocks=blocks))
    return ctx


def _attach_ordinals(blocks: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Ordinals are assigned before repair so fingerprints match the response
    # that originally produced the blocks.
    ordinal = 0
    for block in blocks:
        if block.get("type") == "thinking":
            block["_ordinal"] = ordinal
            ordinal += 1
    return blocks


def _convert_image_block(block: Mapping[str, Any]) -> dict[str, Any]:
    """Convert an Anthropic image/document source to an inline or file part.

    Anthropic format:
        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "..."}}
        {"type": "image", "source": {"type": "url", "url": "https://..."}}

    Upstream format:
        {"inlineData": {"mimeType": "image/png", "data": "..."}}
        {"fileData": {"mimeType": "image/png", "fileUri": "https://..."}}
    """
    source = block.get("source") or {}
    source_type = source.get("type", "")
    default_mime = "application/pdf" if block.get("type") == "document" else "image/png"
    media_type = source.get("media_type") or default_mime

    if source_type == "base64":
        return {"inlineData": {"mimeType": media_type, "data": source.get("data", "")}}
    if source_type == "url":
        return {"fileData": {"mimeType": media_type, "fileUri": source.get("url", "")}}
    if source_type == "text" and block.get("type") == "document":
        return {"text": source.get("data", "")}
    raise ConversionError(
        f"Unsupported {block.get('type')} source type: {source_type or 'missing'}",
        block_type=block.get("type"),
    )


def _serialize_tool_result(content: Any) -> tuple[str, list[dict[str, Any]]]:
    """Flatten tool_result content to text plus any inline image parts."""
    if content is None:
        return "", []
    if isinstance(content, str):
        return content, []
    if not isinstance(content, list):
        return json.dumps(content, ensure_ascii=False), []

    texts: list[str] = []
    media: list[dict[str, Any]] = []
    for item in content:
        if not isinstance(item, Mapping):
            texts.append(str(item))
            continue
        item_type = item.get("type")
        if item_type == "text":
            texts.append(item.get("text", ""))
        elif item_type in ("image", "document"):
            media.append(_convert_image_block(item))
        else:
            raise ConversionError(
                f"Unsupported tool_result content type: {item_type}", block_type=item_type
            )
    return "\n".join(texts), media


def _convert_tool_result(block: Mapping[str, Any], ctx: ConversionContext) -> list[dict[str, Any]]:
    tool_use_id = block.get("tool_use_id", "")
    name = ctx.tool_names.get(tool_use_id) or block.get("name") or tool_use_id
    text, media = _serialize_tool_result(block.get("content"))
    response_key = "error" if block.get("is_error") else "result"

    function_response: dict[str, Any] = {"name": name, "response": {response_key: text}}
    if ctx.family is ModelFamily.CLAUDE and tool_use_id:
        function_response["id"] = tool_use_id
    return [{"functionResponse": function_response}, *media]


def _convert_tool_use(block: Mapping[str, Any], ctx: ConversionContext) -> dict[str, Any]:
    tool_id = block.get("id") or f"toolu_{uuid.uuid4().hex[:24]}"
    name = block.get("name", "")
    ctx.tool_names[tool_id] = name

    tool_input = block.get("input")
    if isinstance(tool_input, str):
        try:
            tool_input = json.loads(tool_input)
        except json.JSONDecodeError:
            tool_input = {"raw": tool_input}

    function_call: dict[str, Any] = {"name": name, "args": tool_input or {}}
    part: dict[str, Any] = {"functionCall": function_call}
    if ctx.family is ModelFamily.CLAUDE:
        function_call["id"] = tool_id
    else:
        part["thoughtSignature"] = resolve_tool_call_signature(
            {**block, "id": tool_id}, ctx.session_id, ctx.signature_cache
        )
    return part


def _convert_thinking(block: Mapping[str, Any], ctx: ConversionContext) -> Optional[dict[str, Any]]:
    if ctx.family is ModelFamily.GEMINI:
        # Gemini signatures travel on the function call, not the thought.
        return None
    if block.get("type") == "redacted_thinking":
        logger.debug("Dropping redacted_thinking block during translation")
        return None
    if not is_thinking_model(ctx.model):
        logger.debug("Dropping thinking block for non-thinking model %s", ctx.model)
        return None

    signature = resolve_thinking_signature(
        block, block.get("_ordinal", 0), ctx.session_id, ctx.signature_cache
    )
    if not signature:
        logger.debug("Omitting thinking block without a recoverable signature")
        return None
    return {"text": block.get("thinking", ""), "thought": True, "thoughtSignature": signature}


def _convert_content_blocks(
    blocks: list[dict[str, Any]],
    ctx: ConversionContext,
) -> list[dict[str, Any]]:
    """Convert one turn's content blocks to upstream parts, preserving order."""
    parts: list[dict[str, Any]] = []

    for block in blocks:
        block_type = block.get("type")

        if block_type == "text":
            text = block.get("text", "")
            if text:
                parts.append({"text": text})

        elif block_type in ("image", "document"):
            parts.append(_convert_image_block(block))

        elif block_type == "tool_use":
            parts.append(_convert_tool_use(block, ctx))

        elif block_type == "tool_result":
            parts.extend(_convert_tool_result(block, ctx))

        elif block_type in ("thinking", "redacted_thinking"):
            part = _convert_thinking(block, ctx)
            if part is not None:
                parts.append(part)

        else:
            raise ConversionError(
                f"Unsupported content block type: {block_type}", block_type=block_type
            )

    return parts


def _convert_tool_choice(tool_choice: Any) -> Optional[dict[str, Any]]:
    """Convert Anthropic tool_choice to upstream toolConfig.

    Anthropic: "auto" | "any" | "none" | {"type": "tool", "name": "..."}
    Upstream: {"functionCallingConfig": {"mode": "AUTO" | "ANY" | "NONE", ...}}
    """
    if tool_choice is None:
        return None

    if isinstance(tool_choice, str):
        choice_type, name = tool_choice, None
    elif isinstance(tool_choice, Mapping):
        choice_type, name = tool_choice.get("type", ""), tool_choice.get("name")
    else:
        return None

    mode = {"auto": "AUTO", "any": "ANY", "none": "NONE", "tool": "ANY"}.get(choice_type)
    if mode is None:
        return None
    config: dict[str, Any] = {"mode": mode}
    if choice_type == "tool" and name:
        config["allowedFunctionNames"] = [name]
    return {"functionCallingConfig": config}


def _convert_tools(
    tools: list[Mapping[str, Any]],
    sanitizer: Optional[SchemaSanitizer] = None,
) -> Optional[list[dict[str, Any]]]:
    """Convert Anthropic tools to upstream function declarations.

    Anthropic: {"name": "...", "description": "...", "input_schema": {...}}
    Upstream: [{"functionDeclarations": [{"name", "description", "parameters"}]}]
    """
    if not tools:
        return None

    declarations = []
    for tool in tools:
        name = str(tool.get("name") or "").strip()
        if not name:
            raise ConversionError("Tool definition is missing a name", block_type="tool")
        declarations.append({
            "name": name,
            "description": tool.get("description", ""),
            "parameters": sanitize_schema(tool.get("input_schema"), sanitizer),
        })

    return [{"functionDeclarations": declarations}]


def _build_generation_config(payload: Mapping[str, Any], ctx: ConversionContext) -> dict[str, Any]:
    config: dict[str, Any] = {}
    if "max_tokens" in payload:
        config["maxOutputTokens"] = payload["max_tokens"]
    if "temperature" in payload:
        config["temperature"] = payload["temperature"]
    if "top_p" in payload:
        config["topP"] = payload["top_p"]
    if "top_k" in payload:
        config["topK"] = payload["top_k"]
    if payload.get("stop_sequences"):
        config["stopSequences"] = list(payload["stop_sequences"])

    if not is_thinking_model(ctx.model):
        return config

    thinking = payload.get("thinking") if isinstance(payload.get("thinking"), Mapping) else {}
    budget = thinking.get("budget_tokens") if ctx.thinking_enabled else None

    if ctx.family is ModelFamily.CLAUDE:
        thinking_config: dict[str, Any] = {"include_thoughts": True}
        if budget:
            thinking_config["thinking_budget"] = budget
            max_tokens = config.get("maxOutputTokens")
            if max_tokens is not None and max_tokens <= budget:
                config["maxOutputTokens"] = budget + THINKING_OUTPUT_HEADROOM
                logger.debug(
                    "Raised maxOutputTokens to %d above thinking budget %d",
                    config["maxOutputTokens"],
                    budget,
                )
    else:
        thinking_config = {"includeThoughts": True}
        if budget:
            thinking_config["thinkingBudget"] = budget
    config["thinkingConfig"] = thinking_config
    return config


def messages_to_cloudcode(
    payload: Mapping[str, Any],
    *,
    session_id: Optional[str] = None,
    signature_cache: Optional[SignatureCache] = None,
    sanitizer: Optional[SchemaSanitizer] = None,
) -> dict[str, Any]:
    """Translate an Anthropic Messages request to a Gemini generateContent request.

    Handles:
    - Top-level system parameter -> systemInstruction
    - Content blocks (text, image, document, tool_use, tool_result, thinking)
    - Tools and tool_choice mapping
    - Parameter mapping (max_tokens, stop_sequences, temperature, thinking, etc.)

    Every ``cache_control`` annotation is removed before conversion.

    Args:
        payload: Anthropic Messages API request body
        session_id: Session id for signature fingerprints (derived if omitted)
        signature_cache: Cache used to restore stripped signatures
        sanitizer: Schema sanitizer for tool definitions

    Returns:
        The inner ``request`` object of a Cloud Code call

    Raises:
        ConversionError: If a block cannot be mapped
    """
    ctx = build_conversion_context(
        payload, session_id=session_id, signature_cache=signature_cache
    )
    clean = strip_cache_control(payload)

    contents: list[dict[str, Any]] = []
    for turn in ctx.turns:
        parts = _convert_content_blocks(turn.blocks, ctx)
        if not parts:
            continue
        role = "model" if turn.role == "assistant" else "user"
        contents.append({"role": role, "parts": parts})

    result: dict[str, Any] = {"contents": contents}

    if ctx.system_text:
        result["systemInstruction"] = {"parts": [{"text": ctx.system_text}]}

    generation_config = _build_generation_config(clean, ctx)
    if generation_config:
        result["generationConfig"] = generation_config

    tools = _convert_tools(ctx.tools, sanitizer)
    if tools:
        result["tools"] = tools
        tool_config = _convert_tool_choice(clean.get("tool_choice"))
        if tool_config is not None:
            result["toolConfig"] = tool_config

    return result


def _convert_stop_reason(finish_reason: Optional[str], has_tool_call: bool = False) -> str:
    """Convert upstream finishReason to Anthropic stop_reason.

    Upstream: STOP, MAX_TOKENS, SAFETY, RECITATION, MALFORMED_FUNCTION_CALL, ...
    Anthropic: end_turn, max_tokens, stop_sequence, tool_use, refusal
    """
    if has_tool_call:
        return "tool_use"
    if finish_reason is None:
        return "end_turn"

    mapping = {
        "STOP": "end_turn",
        "MAX_TOKENS": "max_tokens",
        "SAFETY": "refusal",
        "RECITATION": "refusal",
        "PROHIBITED_CONTENT": "refusal",
    }

    return mapping.get(str(finish_reason).upper(), "end_turn")


def _convert_usage(usage_metadata: Optional[Mapping[str, Any]]) -> dict[str, int]:
    """Map upstream usageMetadata to Anthropic usage.

    Cached prompt tokens are billed separately, so they are subtracted from
    input_tokens and reported as cache_read_input_tokens.
    """
    usage_metadata = usage_metadata or {}
    prompt_tokens = int(usage_metadata.get("promptTokenCount") or 0)
    cached_tokens = int(usage_metadata.get("cachedContentTokenCount") or 0)
    usage = {
        "input_tokens": max(0, prompt_tokens - cached_tokens),
        "output_tokens": int(usage_metadata.get("candidatesTokenCount") or 0),
    }
    if cached_tokens > 0:
        usage["cache_read_input_tokens"] = cached_tokens
    return usage


def unwrap_response(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the Gemini response from a Cloud Code ``{"response": ...}`` envelope."""
    inner = payload.get("response")
    return inner if isinstance(inner, Mapping) else payload


def _convert_parts_to_blocks(
    parts: list[Mapping[str, Any]],
) -> tuple[list[dict[str, Any]], dict[str, str]]:
    """Convert upstream parts to Anthropic content blocks.

    Consecutive thought parts merge into one thinking block and consecutive
    text parts into one text block, matching the streamed output.

    Returns:
        Tuple of (blocks, signatures_by_tool_id)
    """
    blocks: list[dict[str, Any]] = []
    tool_signatures: dict[str, str] = {}

    for part in parts:
        signature = part.get("thoughtSignature")

        if part.get("functionCall"):
            call = part["functionCall"]
            tool_id = call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}"
            blocks.append({
                "type": "tool_use",
                "id": tool_id,
                "name": call.get("name", ""),
                "input": call.get("args") or {},
            })
            if signature:
                tool_signatures[tool_id] = signature
            continue

        if part.get("inlineData"):
            inline = part["inlineData"]
            blocks.append({
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": inline.get("mimeType", "image/png"),
                    "data": inline.get("data", ""),
                },
            })
            continue

        text = part.get("text", "")
        last = blocks[-1] if blocks else None
        if part.get("thought"):
            if last is not None and last["type"] == "thinking" and not last.get("signature"):
                last["thinking"] += text
            else:
                last = {"type": "thinking", "thinking": text, "signature": ""}
                blocks.append(last)
            if signature:
                last["signature"] = signature
        elif text:
            if last is not None and last["type"] == "text":
                last["text"] += text
            else:
                blocks.append({"type": "text", "text": text})
        elif signature and last is not None and last["type"] == "thinking":
            # Trailing signature delivered on an empty part.
            last["signature"] = signature

    return blocks, tool_signatures


def cloudcode_to_messages(
    payload: Mapping[str, Any],
    *,
    model: str,
    session_id: Optional[str] = None,
    signature_cache: Optional[SignatureCache] = None,
    message_id: Optional[str] = None,
) -> dict[str, Any]:
    """Translate a Cloud Code generateContent response to an Anthropic message.

    Handles:
    - Response envelope (id, type, role, model, usage, stop_reason)
    - Content blocks (thinking, text, tool_use, image)
    - Usage mapping, including cache reads
    - Signature caching for the next turn

    Args:
        payload: Cloud Code response body (wrapped or bare)
        model: Model name reported to the client
        session_id: Session id used to key cached signatures
        signature_cache: Cache receiving newly produced signatures
        message_id: Message id to use (generated if omitted)

    Returns:
        Anthropic Messages API response body
    """
    response = unwrap_response(payload)
    candidates = response.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    parts = (candidate.get("content") or {}).get("parts") or []

    content_blocks, tool_signatures = _convert_parts_to_blocks(parts)
    has_tool_call = any(b["type"] == "tool_use" for b in content_blocks)

    if session_id:
        remember_signatures(
            content_blocks,
            session_id,
            get_model_family(model),
            signature_cache,
            tool_signatures,
        )

    if not content_blocks:
        content_blocks = [{"type": "text", "text": ""}]

    response_id = message_id or response.get("responseId") or uuid.uuid4().hex[:24]
    if not str(response_id).startswith("msg_"):
        response_id = f"msg_{response_id}"

    return {
        "id": response_id,
        "type": "message",
        "role": "assistant",
        "content": content_blocks,
        "model": model,
        "stop_reason": _convert_stop_reason(candidate.get("finishReason"), has_tool_call),
        "stop_sequence": None,
        "usage": _convert_usage(response.get("usageMetadata")),
    }
