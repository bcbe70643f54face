"""Anthropic Messages API translation helpers.

Provides translation between Anthropic Messages API format and the Cloud
Code (Gemini generateContent) format, enabling the gateway to serve
Anthropic-format requests from Cloud Code accounts.
"""

from .translator import ConversionContext, cloudcode_to_messages, messages_to_cloudcode
from .schema import SchemaSanitizer, sanitize_schema
from .stream_adapter import (
    CloudCodeToMessagesStreamAdapter,
    adapt_cloudcode_stream_to_messages,
    format_sse_event,
)
from .thinking import strip_cache_control

__all__ = [
    "ConversionContext",
    "messages_to_cloudcode",
    "cloudcode_to_messages",
    "SchemaSanitizer",
    "sanitize_schema",
    "CloudCodeToMessagesStreamAdapter",
    "adapt_cloudcode_stream_to_messages",
    "format_sse_event",
    "strip_cache_control",
]
