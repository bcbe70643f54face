"""Stream adapter for converting Cloud Code SSE to Anthropic Messages SSE.

Converts the Gemini ``streamGenerateContent?alt=sse`` format, as wrapped by
the Cloud Code endpoints, to Anthropic Messages streaming format with proper
event types and lifecycle events.

Cloud Code Events:
    data: {"response":{"candidates":[{"content":{"parts":[{"text":"...","thought":true}]}}]}}
    data: {"response":{"candidates":[{"content":{"parts":[{"thoughtSignature":"..."}]}}]}}
    data: {"response":{"candidates":[{"content":{"parts":[{"functionCall":{...}}]}}]}}
    data: {"response":{"candidates":[{"finishReason":"STOP"}],"usageMetadata":{...}}}

Anthropic Messages Events:
    event: message_start
    data: {"type":"message_start","message":{...}}

    event: content_block_start
    data: {"type":"content_block_start","index":0,"content_block":{"type":"thinking","thinking":""}}

    event: content_block_delta
    data: {"type":"content_block_delta","index":0,"delta":{"type":"thinking_delta","thinking":"..."}}

    event: content_block_delta
    data: {"type":"content_block_delta","index":0,"delta":{"type":"signature_delta","signature":"..."}}

    event: content_block_stop
    data: {"type":"content_block_stop","index":0}

    event: message_delta
    data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":10}}

    event: message_stop
    data: {"type":"message_stop"}
"""

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, AsyncIterator, Optional, Union

import httpx

from ..core.exceptions import ProxyError, UpstreamFault
from ..core.models import ModelFamily, get_model_family
from ..core.signatures import (
    SignatureCache,
    is_valid_signature,
    thinking_fingerprint,
    tool_call_fingerprint,
)
from ..core.sse import SSEDecoder, extract_error
from .translator import _convert_stop_reason, _convert_usage, unwrap_response

logger = logging.getLogger("cloudcode-proxy")


class StreamState(str, Enum):
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    DONE = "done"


class BlockState(str, Enum):
    NONE = "none"
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


class CloudCodeToMessagesStreamAdapter:
    """Converts a Cloud Code SSE stream to Anthropic Messages SSE events.

    This adapter maintains state during streaming to:
    - Open and close content blocks (thinking, text and tool_use) in order
    - Assign monotonic block indices that are never reused
    - Emit thinking signatures and remember them for the next turn
    - Track usage and the finish reason for the terminal events
    """

    def __init__(
        self,
        message_id: str,
        model: str,
        session_id: Optional[str] = None,
        signature_cache: Optional[SignatureCache] = None,
    ):
        """Initialize the stream adapter.

        Args:
            message_id: The message ID to use (e.g., "msg_xxx")
            model: Model name for the response
            session_id: Session id used to key cached signatures
            signature_cache: Cache receiving signatures of closed blocks
        """
        self.message_id = message_id
        self.model = model
        self.family = get_model_family(model)
        self.session_id = session_id
        self.signature_cache = signature_cache

        self.state = StreamState.AWAITING_START
        self.block_state = BlockState.NONE
        self.block_index = -1

        # Finished blocks, in emission order, for the final message
        self.content_blocks: list[dict[str, Any]] = []
        self._current: Optional[dict[str, Any]] = None
        self._pending_signature: Optional[str] = None
        self._thinking_ordinal = 0
        self.tool_signatures: dict[str, str] = {}

        self.usage_metadata: dict[str, Any] = {}
        self.finish_reason: Optional[str] = None
        self.has_tool_use = False

    @property
    def has_content(self) -> bool:
        return bool(self.content_blocks) or self._current is not None

    async def adapt_events(
        self,
        upstream: AsyncIterator[bytes],
    ) -> AsyncIterator[dict[str, Any]]:
        """Transform the upstream byte stream into Anthropic event dicts.

        Upstream error payloads and transport failures end the stream with
        one ``error`` event. Cancellation is propagated.

        Args:
            upstream: Raw SSE bytes from the upstream response

        Yields:
            Anthropic Messages API events
        """
        decoder = SSEDecoder()
        try:
            async for chunk in upstream:
                for data_str in decoder.feed(chunk):
                    for event in self._process_data(data_str):
                        yield event
                    if self.state is StreamState.DONE:
                        return
            for data_str in decoder.flush():
                for event in self._process_data(data_str):
                    yield event
                if self.state is StreamState.DONE:
                    return
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as exc:
            logger.error(f"Upstream stream failed mid-response: {exc!r}")
            for event in self.fail(UpstreamFault(f"Upstream stream interrupted: {exc!r}", 502)):
                yield event
            return

        for event in self.finish():
            yield event

    async def adapt_stream(
        self,
        upstream: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        """Transform the upstream stream into Anthropic Messages SSE bytes.

        Args:
            upstream: The incoming Cloud Code SSE stream

        Yields:
            Anthropic Messages API SSE events as bytes
        """
        async for event in self.adapt_events(upstream):
            yield format_sse_event(event)

    def _process_data(self, data_str: str) -> list[dict[str, Any]]:
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.debug(f"CloudCodeStreamAdapter: Failed to parse: {data_str[:100]}")
            return []

        error = extract_error(data)
        if error is not None:
            logger.error(f"Upstream error inside stream: {error}")
            return self.fail(UpstreamFault(error.message, error.status_code or 500))
        if not isinstance(data, dict):
            return []
        return self.process_event(data)

    def process_event(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        """Process one parsed upstream event.

        Args:
            data: Parsed JSON from the upstream stream (wrapped or bare)

        Returns:
            Anthropic events produced by this upstream event
        """
        if self.state is StreamState.DONE:
            return []

        events: list[dict[str, Any]] = []
        response = unwrap_response(data)

        usage = response.get("usageMetadata")
        if usage:
            self.usage_metadata = dict(usage)

        if self.state is StreamState.AWAITING_START:
            events.append(self._message_start())
            self.state = StreamState.STREAMING

        candidates = response.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        for part in (candidate.get("content") or {}).get("parts") or []:
            events.extend(self._process_part(part))

        if candidate.get("finishReason"):
            self.finish_reason = candidate["finishReason"]

        return events

    def _process_part(self, part: dict[str, Any]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        signature = part.get("thoughtSignature")

        if part.get("functionCall"):
            call = part["functionCall"]
            events.extend(self._close_block())
            tool_id = call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}"
            block = {"type": "tool_use", "id": tool_id, "name": call.get("name", ""), "input": {}}
            events.extend(self._open_block(BlockState.TOOL_USE, block))
            args = call.get("args") or {}
            self._current["input"] = args
            events.append(self._block_delta({
                "type": "input_json_delta",
                "partial_json": json.dumps(args, ensure_ascii=False),
            }))
            if is_valid_signature(signature):
                self.tool_signatures[tool_id] = signature
            self.has_tool_use = True
            return events

        text = part.get("text", "")

        if part.get("thought"):
            # A signed thinking block is complete; further thoughts open a new one.
            if self.block_state is not BlockState.THINKING or self._pending_signature:
                events.extend(self._close_block())
                events.extend(self._open_block(
                    BlockState.THINKING, {"type": "thinking", "thinking": ""}
                ))
            if text:
                self._current["thinking"] += text
                events.append(self._block_delta({"type": "thinking_delta", "thinking": text}))
            if signature:
                self._pending_signature = signature
            return events

        if not text:
            if signature and self.block_state is BlockState.THINKING:
                self._pending_signature = signature
            return events

        if self.block_state is not BlockState.TEXT:
            events.extend(self._close_block())
            events.extend(self._open_block(BlockState.TEXT, {"type": "text", "text": ""}))
        self._current["text"] += text
        events.append(self._block_delta({"type": "text_delta", "text": text}))
        return events

    def _open_block(self, state: BlockState, block: dict[str, Any]) -> list[dict[str, Any]]:
        self.block_index += 1
        self.block_state = state
        self._current = dict(block)
        if state is BlockState.THINKING:
            self._current["signature"] = ""
        return [{
            "type": "content_block_start",
            "index": self.block_index,
            "content_block": block,
        }]

    def _close_block(self) -> list[dict[str, Any]]:
        if self.block_state is BlockState.NONE or self._current is None:
            return []

        events: list[dict[str, Any]] = []
        if self.block_state is BlockState.THINKING and self._pending_signature:
            self._current["signature"] = self._pending_signature
            events.append(self._block_delta({
                "type": "signature_delta",
                "signature": self._pending_signature,
            }))
        events.append({"type": "content_block_stop", "index": self.block_index})

        self._remember_signature(self._current)
        self.content_blocks.append(self._current)
        self._current = None
        self._pending_signature = None
        self.block_state = BlockState.NONE
        return events

    def _remember_signature(self, block: dict[str, Any]) -> None:
        """Cache the signature of a block the client has just seen closed."""
        if block["type"] == "thinking":
            ordinal = self._thinking_ordinal
            self._thinking_ordinal += 1
            signature = block.get("signature")
            if self.family is not ModelFamily.CLAUDE or not is_valid_signature(signature):
                return
            key = thinking_fingerprint(block.get("thinking", ""), ordinal, self.session_id or "")
        elif block["type"] == "tool_use" and self.family is ModelFamily.GEMINI:
            signature = self.tool_signatures.get(block["id"])
            if not is_valid_signature(signature):
                return
            key = tool_call_fingerprint(block["id"], self.session_id or "")
        else:
            return
        if self.session_id and self.signature_cache is not None:
            self.signature_cache.put(key, signature)

    def _block_delta(self, delta: dict[str, Any]) -> dict[str, Any]:
        return {"type": "content_block_delta", "index": self.block_index, "delta": delta}

    def finish(self) -> list[dict[str, Any]]:
        """Close the open block and emit the terminal events.

        Returns:
            Final Anthropic Messages events
        """
        if self.state is StreamState.DONE:
            return []

        events: list[dict[str, Any]] = []
        if self.state is StreamState.AWAITING_START:
            events.append(self._message_start())
        events.extend(self._close_block())

        stop_reason = _convert_stop_reason(self.finish_reason, self.has_tool_use)
        events.append({
            "type": "message_delta",
            "delta": {"stop_reason": stop_reason, "stop_sequence": None},
            "usage": _convert_usage(self.usage_metadata),
        })
        events.append({"type": "message_stop"})
        self.state = StreamState.DONE
        return events

    def fail(self, error: Union[ProxyError, str]) -> list[dict[str, Any]]:
        """Emit one terminal ``error`` event and stop translating.

        Returns:
            A single-element list with the error event, or nothing if the
            stream already ended
        """
        if self.state is StreamState.DONE:
            return []
        self.state = StreamState.DONE
        if isinstance(error, ProxyError):
            return [error.to_payload()]
        return [{"type": "error", "error": {"type": "api_error", "message": str(error)}}]

    def _message_start(self) -> dict[str, Any]:
        usage = _convert_usage(self.usage_metadata)
        usage["output_tokens"] = 0
        message = {
            "id": self.message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": self.model,
            "stop_reason": None,
            "stop_sequence": None,
            "usage": usage,
        }
        return {"type": "message_start", "message": message}

    def build_final_message(self) -> dict[str, Any]:
        """Build the final message object from everything streamed so far.

        Returns:
            Complete Anthropic message object
        """
        content = list(self.content_blocks)
        if self._current is not None:
            content.append(self._current)
        return {
            "id": self.message_id,
            "type": "message",
            "role": "assistant",
            "content": content or [{"type": "text", "text": ""}],
            "model": self.model,
            "stop_reason": _convert_stop_reason(self.finish_reason, self.has_tool_use),
            "stop_sequence": None,
            "usage": _convert_usage(self.usage_metadata),
        }


def format_sse_event(data: dict[str, Any]) -> bytes:
    """Format an event dict as Anthropic SSE bytes.

    Args:
        data: Event data; its ``type`` is used as the event name

    Returns:
        SSE formatted bytes
    """
    json_str = json.dumps(data, ensure_ascii=False)
    return f"event: {data['type']}\ndata: {json_str}\n\n".encode("utf-8")


async def adapt_cloudcode_stream_to_messages(
    message_id: str,
    model: str,
    upstream: AsyncIterator[bytes],
    session_id: Optional[str] = None,
    signature_cache: Optional[SignatureCache] = None,
) -> AsyncIterator[bytes]:
    """Convenience function to adapt a Cloud Code stream to Anthropic Messages.

    Args:
        message_id: Message ID for the response
        model: Model name
        upstream: Input Cloud Code SSE stream
        session_id: Session id used to key cached signatures
        signature_cache: Cache receiving produced signatures

    Yields:
        Anthropic Messages API SSE events
    """
    adapter = CloudCodeToMessagesStreamAdapter(message_id, model, session_id, signature_cache)
    async for event in adapter.adapt_stream(upstream):
        yield event
