"""SSE (Server-Sent Events) stream utilities and error detection."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional

logger = logging.getLogger("cloudcode-proxy")

# Max bytes to buffer when checking for streaming errors before committing to client
STREAM_ERROR_CHECK_BUFFER_SIZE = 4096


@dataclass
class SSEStreamError:
    """An error object delivered inside an upstream SSE stream."""

    message: str
    status_code: Optional[int] = None
    status: Optional[str] = None
    details: Optional[Any] = None

    def __str__(self) -> str:
        return f"SSE stream error: {self.message} (code={self.status_code}, status={self.status})"


class SSEDecoder:
    """Incremental decoder for ``data:`` lines of an SSE byte stream.

    Network chunks do not align with lines, so partial lines are buffered
    until their newline arrives.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return the data payloads of every completed line."""
        self._buffer += chunk.decode("utf-8", errors="replace")
        *lines, self._buffer = self._buffer.split("\n")
        return [data for data in (_data_of(line) for line in lines) if data is not None]

    def flush(self) -> list[str]:
        """Return the payload of a trailing line without newline, if any."""
        line, self._buffer = self._buffer, ""
        data = _data_of(line)
        return [data] if data is not None else []


def _data_of(line: str) -> Optional[str]:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    return data


def iter_sse_json(data: bytes) -> Iterator[dict[str, Any]]:
    """Yield every JSON object carried by the ``data:`` lines of ``data``."""
    decoder = SSEDecoder()
    for payload in decoder.feed(data) + decoder.flush():
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparseable SSE payload: {payload[:100]}")
            continue
        if isinstance(parsed, dict):
            yield parsed


def extract_error(parsed: Any) -> Optional[SSEStreamError]:
    """Return the error carried by an upstream JSON body, if it is one.

    Detects patterns like:
    - Google: {"error": {"code": 429, "message": "...", "status": "RESOURCE_EXHAUSTED"}}
    - Wrapped: [{"error": {...}}]
    - Anthropic-style: {"type": "error", "error": {...}}
    """
    if isinstance(parsed, list) and parsed:
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        return None

    error_obj = parsed.get("error")
    if parsed.get("type") != "error" and not isinstance(error_obj, dict):
        return None
    if not isinstance(error_obj, dict):
        return SSEStreamError(message=str(error_obj or "unknown error"))

    code = error_obj.get("code")
    try:
        status_code = int(code) if code is not None else None
    except (TypeError, ValueError):
        status_code = None
    return SSEStreamError(
        message=error_obj.get("message") or str(error_obj),
        status_code=status_code,
        status=error_obj.get("status") or error_obj.get("type"),
        details=error_obj.get("details"),
    )


def detect_sse_stream_error(data: bytes) -> Optional[SSEStreamError]:
    """
    Check if buffered SSE data contains an error event.

    Returns the error if one is detected, None otherwise. Only complete
    ``data:`` lines are inspected.
    """
    for parsed in iter_sse_json(data):
        error = extract_error(parsed)
        if error is not None:
            return error
    return None
