"""Tests for Anthropic Messages <-> Cloud Code translation."""

import pytest

from cloudcode_proxy.core.exceptions import ConversionError
from cloudcode_proxy.core.session import derive_session_id
from cloudcode_proxy.core.signatures import (
    SKIP_SIGNATURE_SENTINEL,
    SignatureCache,
    thinking_fingerprint,
    tool_call_fingerprint,
)
from cloudcode_proxy.messages.translator import (
    build_conversion_context,
    cloudcode_to_messages,
    messages_to_cloudcode,
)
from cloudcode_proxy.testing import build_generate_response, build_parts

from conftest import SIGNATURE_A, SIGNATURE_B

WEATHER_TOOL = {
    "name": "get_weather",
    "description": "Current weather",
    "input_schema": {
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    },
}


def _tool_turns(signature: str = "") -> list[dict]:
    return [
        {"role": "user", "content": "Weather in Paris?"},
        {
            "role": "assistant",
            "content": [
                {"type": "thinking", "thinking": "Need the tool", "signature": signature},
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Paris"}},
            ],
        },
        {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "Sunny"}],
        },
    ]


class TestMessagesToCloudCode:
    """Tests for request translation."""

    def test_simple_text_request(self):
        """Test basic text message translation."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "max_tokens": 100,
            "system": "Be concise",
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "user", "content": [{"type": "text", "text": "Bye"}, {"type": "text", "text": ""}]},
            ],
        })

        assert result["contents"] == [
            {"role": "user", "parts": [{"text": "Hi"}]},
            {"role": "model", "parts": [{"text": "Hello!"}]},
            {"role": "user", "parts": [{"text": "Bye"}]},
        ]
        assert result["systemInstruction"] == {"parts": [{"text": "Be concise"}]}
        assert result["generationConfig"] == {"maxOutputTokens": 100}
        assert "tools" not in result

    def test_system_blocks_joined(self):
        """Test that a list of system text blocks becomes one instruction."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "system": [{"type": "text", "text": "One"}, {"type": "text", "text": "Two"}],
            "messages": [{"role": "user", "content": "Hi"}],
        })
        assert result["systemInstruction"]["parts"][0]["text"] == "One\nTwo"

    def test_generation_parameters(self):
        """Test sampling parameter mapping."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "max_tokens": 50,
            "temperature": 0.3,
            "top_p": 0.9,
            "top_k": 40,
            "stop_sequences": ["END"],
            "messages": [{"role": "user", "content": "Hi"}],
        })
        assert result["generationConfig"] == {
            "maxOutputTokens": 50,
            "temperature": 0.3,
            "topP": 0.9,
            "topK": 40,
            "stopSequences": ["END"],
        }

    def test_image_and_document_blocks(self):
        """Test media block conversion."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "QUJD"}},
                        {"type": "image", "source": {"type": "url", "url": "https://example.com/a.png"}},
                        {"type": "document", "source": {"type": "base64", "media_type": "application/pdf", "data": "UERG"}},
                        {"type": "document", "source": {"type": "text", "data": "plain doc"}},
                    ],
                }
            ],
        })
        assert result["contents"][0]["parts"] == [
            {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}},
            {"fileData": {"mimeType": "image/png", "fileUri": "https://example.com/a.png"}},
            {"inlineData": {"mimeType": "application/pdf", "data": "UERG"}},
            {"text": "plain doc"},
        ]

    def test_tool_use_and_result_for_claude(self):
        """Test that Claude calls carry ids and results are named from the call."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "messages": _tool_turns(),
            "tools": [WEATHER_TOOL],
        })

        model_parts = result["contents"][1]["parts"]
        assert model_parts == [
            {"functionCall": {"name": "get_weather", "args": {"city": "Paris"}, "id": "toolu_1"}}
        ]
        assert result["contents"][2]["parts"] == [
            {"functionResponse": {"name": "get_weather", "response": {"result": "Sunny"}, "id": "toolu_1"}}
        ]
        declaration = result["tools"][0]["functionDeclarations"][0]
        assert declaration["name"] == "get_weather"
        assert declaration["parameters"]["required"] == ["city"]

    def test_tool_use_for_gemini_gets_sentinel_signature(self):
        """Test that Gemini calls without a known signature get the sentinel."""
        result = messages_to_cloudcode({
            "model": "gemini-3-flash",
            "messages": _tool_turns(),
        })

        model_parts = result["contents"][1]["parts"]
        assert model_parts == [
            {
                "functionCall": {"name": "get_weather", "args": {"city": "Paris"}},
                "thoughtSignature": SKIP_SIGNATURE_SENTINEL,
            }
        ]
        assert "id" not in result["contents"][2]["parts"][0]["functionResponse"]

    def test_tool_use_for_gemini_recovers_signature(self):
        """Test Gemini signature recovery by tool-call fingerprint."""
        cache = SignatureCache()
        cache.put(tool_call_fingerprint("toolu_1", "sess"), SIGNATURE_B)

        result = messages_to_cloudcode(
            {"model": "gemini-3-flash", "messages": _tool_turns()},
            session_id="sess",
            signature_cache=cache,
        )
        assert result["contents"][1]["parts"][0]["thoughtSignature"] == SIGNATURE_B

    def test_tool_result_error_and_media(self):
        """Test error results and images carried inside a tool result."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": "toolu_9",
                            "is_error": True,
                            "content": [
                                {"type": "text", "text": "crashed"},
                                {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "AAAA"}},
                            ],
                        }
                    ],
                }
            ],
        })
        parts = result["contents"][0]["parts"]
        assert parts[0]["functionResponse"]["response"] == {"error": "crashed"}
        assert parts[1] == {"inlineData": {"mimeType": "image/png", "data": "AAAA"}}

    def test_tool_input_as_json_string(self):
        """Test that string tool input is parsed."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "messages": [
                {"role": "user", "content": "go"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "t", "name": "f", "input": '{"a": 1}'},
                ]},
            ],
        })
        assert result["contents"][1]["parts"][0]["functionCall"]["args"] == {"a": 1}

    @pytest.mark.parametrize(
        "tool_choice, expected",
        [
            ({"type": "auto"}, {"mode": "AUTO"}),
            ({"type": "any"}, {"mode": "ANY"}),
            ({"type": "none"}, {"mode": "NONE"}),
            ({"type": "tool", "name": "get_weather"}, {"mode": "ANY", "allowedFunctionNames": ["get_weather"]}),
        ],
    )
    def test_tool_choice(self, tool_choice, expected):
        """Test tool_choice mapping."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "messages": [{"role": "user", "content": "Hi"}],
            "tools": [WEATHER_TOOL],
            "tool_choice": tool_choice,
        })
        assert result["toolConfig"] == {"functionCallingConfig": expected}

    def test_unknown_block_type_raises(self):
        """Test that an unmappable block fails with its type."""
        with pytest.raises(ConversionError) as exc_info:
            messages_to_cloudcode({
                "model": "claude-sonnet-4-5",
                "messages": [{"role": "user", "content": [{"type": "video", "url": "x"}]}],
            })
        assert exc_info.value.block_type == "video"
        assert exc_info.value.status_code == 400

    def test_unknown_role_raises(self):
        """Test that roles other than user/assistant are rejected."""
        with pytest.raises(ConversionError):
            messages_to_cloudcode({
                "model": "claude-sonnet-4-5",
                "messages": [{"role": "tool", "content": "x"}],
            })

    def test_cache_control_removed_everywhere(self):
        """Test that no cache_control survives translation."""
        ephemeral = {"type": "ephemeral"}
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "system": [{"type": "text", "text": "sys", "cache_control": ephemeral}],
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": "Hi", "cache_control": ephemeral}]},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "t", "name": "get_weather", "input": {"city": "x"}, "cache_control": ephemeral},
                ]},
                {"role": "user", "content": [
                    {"type": "tool_result", "tool_use_id": "t", "cache_control": ephemeral,
                     "content": [{"type": "text", "text": "ok", "cache_control": ephemeral}]},
                ]},
            ],
            "tools": [{**WEATHER_TOOL, "cache_control": ephemeral}],
        })
        assert "cache_control" not in repr(result)

    def test_model_prefix_stripped(self):
        """Test that gc/ does not reach the family decision."""
        ctx = build_conversion_context({"model": "gc/gemini-3-flash", "messages": []})
        assert ctx.model == "gemini-3-flash"
        assert ctx.family.value == "gemini"


class TestThinking:
    """Tests for thinking configuration and replay."""

    def test_claude_thinking_config_raises_max_tokens(self):
        """Test snake_case config and max_tokens above the budget."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5-thinking",
            "max_tokens": 4096,
            "thinking": {"type": "enabled", "budget_tokens": 10000},
            "messages": [{"role": "user", "content": "Hi"}],
        })
        config = result["generationConfig"]
        assert config["thinkingConfig"] == {"include_thoughts": True, "thinking_budget": 10000}
        assert config["maxOutputTokens"] > 10000

    def test_gemini_thinking_config(self):
        """Test camelCase config for Gemini."""
        result = messages_to_cloudcode({
            "model": "gemini-3-flash",
            "max_tokens": 8192,
            "thinking": {"type": "enabled", "budget_tokens": 2048},
            "messages": [{"role": "user", "content": "Hi"}],
        })
        config = result["generationConfig"]
        assert config["thinkingConfig"] == {"includeThoughts": True, "thinkingBudget": 2048}
        assert config["maxOutputTokens"] == 8192

    def test_non_thinking_model_has_no_thinking_config(self):
        """Test that thinking is ignored for non-thinking models."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5",
            "thinking": {"type": "enabled", "budget_tokens": 2048},
            "messages": [{"role": "user", "content": "Hi"}],
        })
        assert "generationConfig" not in result

    def test_claude_thinking_replayed_with_signature(self):
        """Test that a signed thinking block is replayed as a thought part."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5-thinking",
            "messages": _tool_turns(signature=SIGNATURE_A),
        })
        assert result["contents"][1]["parts"][0] == {
            "text": "Need the tool",
            "thought": True,
            "thoughtSignature": SIGNATURE_A,
        }

    def test_claude_thinking_signature_recovered(self):
        """Test recovery of a stripped signature by content fingerprint."""
        cache = SignatureCache()
        cache.put(thinking_fingerprint("Need the tool", 0, "sess"), SIGNATURE_A)

        result = messages_to_cloudcode(
            {"model": "claude-sonnet-4-5-thinking", "messages": _tool_turns()},
            session_id="sess",
            signature_cache=cache,
        )
        assert result["contents"][1]["parts"][0]["thoughtSignature"] == SIGNATURE_A

    def test_claude_thinking_without_signature_is_omitted(self):
        """Test that an unrecoverable thinking block is dropped."""
        result = messages_to_cloudcode(
            {"model": "claude-sonnet-4-5-thinking", "messages": _tool_turns()},
            session_id="sess",
            signature_cache=SignatureCache(),
        )
        model_parts = result["contents"][1]["parts"]
        assert len(model_parts) == 1
        assert "functionCall" in model_parts[0]

    def test_redacted_thinking_dropped(self):
        """Test that redacted thinking has no upstream equivalent."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5-thinking",
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "redacted_thinking", "data": "opaque"},
                    {"type": "text", "text": "Hello"},
                ]},
            ],
        })
        assert result["contents"][1]["parts"] == [{"text": "Hello"}]

    def test_gemini_thinking_not_replayed(self):
        """Test that Gemini thinking is carried only by function-call signatures."""
        result = messages_to_cloudcode({
            "model": "gemini-3-flash",
            "messages": _tool_turns(signature=SIGNATURE_A),
        })
        model_parts = result["contents"][1]["parts"]
        assert all("thought" not in part for part in model_parts)

    def test_thinking_after_tool_use_is_dropped(self):
        """Test the ordering repair inside an assistant turn."""
        result = messages_to_cloudcode({
            "model": "claude-sonnet-4-5-thinking",
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": [
                    {"type": "tool_use", "id": "t", "name": "f", "input": {}},
                    {"type": "thinking", "thinking": "late", "signature": SIGNATURE_A},
                ]},
            ],
        })
        model_parts = result["contents"][1]["parts"]
        assert len(model_parts) == 1
        assert "functionCall" in model_parts[0]


class TestCloudCodeToMessages:
    """Tests for response translation."""

    def test_text_response(self):
        """Test a plain text response."""
        result = cloudcode_to_messages(
            build_generate_response(build_parts("Hello!")),
            model="claude-sonnet-4-5",
            message_id="abc",
        )
        assert result["id"] == "msg_abc"
        assert result["type"] == "message"
        assert result["role"] == "assistant"
        assert result["model"] == "claude-sonnet-4-5"
        assert result["content"] == [{"type": "text", "text": "Hello!"}]
        assert result["stop_reason"] == "end_turn"
        assert result["usage"] == {"input_tokens": 10, "output_tokens": 5}

    def test_merges_consecutive_parts(self):
        """Test that consecutive thought and text parts merge."""
        parts = [
            {"text": "Let me ", "thought": True},
            {"text": "think", "thought": True, "thoughtSignature": SIGNATURE_A},
            {"text": "Hello "},
            {"text": "world"},
        ]
        result = cloudcode_to_messages(build_generate_response(parts), model="claude-sonnet-4-5-thinking")
        assert result["content"] == [
            {"type": "thinking", "thinking": "Let me think", "signature": SIGNATURE_A},
            {"type": "text", "text": "Hello world"},
        ]

    def test_trailing_signature_on_empty_part(self):
        """Test that a signature delivered after the thought is attached."""
        parts = [
            {"text": "plan", "thought": True},
            {"text": "", "thoughtSignature": SIGNATURE_A},
            {"text": "done"},
        ]
        result = cloudcode_to_messages(build_generate_response(parts), model="claude-sonnet-4-5-thinking")
        assert result["content"][0]["signature"] == SIGNATURE_A

    def test_function_call_and_image(self):
        """Test tool_use and image blocks."""
        parts = [
            {"functionCall": {"name": "get_weather", "args": {"city": "Paris"}, "id": "toolu_1"}},
            {"inlineData": {"mimeType": "image/png", "data": "AAAA"}},
        ]
        result = cloudcode_to_messages(build_generate_response(parts), model="claude-sonnet-4-5")
        assert result["content"][0] == {
            "type": "tool_use",
            "id": "toolu_1",
            "name": "get_weather",
            "input": {"city": "Paris"},
        }
        assert result["content"][1]["source"] == {"type": "base64", "media_type": "image/png", "data": "AAAA"}
        assert result["stop_reason"] == "tool_use"

    def test_function_call_without_id_gets_one(self):
        """Test that Gemini calls without ids get generated tool ids."""
        parts = [{"functionCall": {"name": "f", "args": {}}}]
        result = cloudcode_to_messages(build_generate_response(parts), model="gemini-3-flash")
        assert result["content"][0]["id"].startswith("toolu_")

    @pytest.mark.parametrize(
        "finish_reason, stop_reason",
        [("STOP", "end_turn"), ("MAX_TOKENS", "max_tokens"), ("SAFETY", "refusal"), ("OTHER", "end_turn")],
    )
    def test_stop_reasons(self, finish_reason, stop_reason):
        """Test finishReason mapping."""
        result = cloudcode_to_messages(
            build_generate_response(build_parts("x"), finish_reason=finish_reason),
            model="claude-sonnet-4-5",
        )
        assert result["stop_reason"] == stop_reason

    def test_usage_with_cached_tokens(self):
        """Test that cached prompt tokens are reported separately."""
        usage = {"promptTokenCount": 120, "cachedContentTokenCount": 100, "candidatesTokenCount": 7}
        result = cloudcode_to_messages(
            build_generate_response(build_parts("x"), usage=usage),
            model="claude-sonnet-4-5",
        )
        assert result["usage"] == {"input_tokens": 20, "output_tokens": 7, "cache_read_input_tokens": 100}

    def test_empty_candidates(self):
        """Test that an empty response still has one text block."""
        result = cloudcode_to_messages({"response": {"candidates": []}}, model="claude-sonnet-4-5")
        assert result["content"] == [{"type": "text", "text": ""}]

    def test_unwrapped_response_accepted(self):
        """Test that a bare Gemini response is accepted."""
        inner = build_generate_response(build_parts("bare"))["response"]
        result = cloudcode_to_messages(inner, model="claude-sonnet-4-5")
        assert result["content"][0]["text"] == "bare"

    def test_gemini_tool_signature_cached(self):
        """Test that Gemini call signatures are remembered by tool id."""
        cache = SignatureCache()
        parts = build_parts(tool_calls=[{"name": "f", "id": "toolu_7"}], tool_signature=SIGNATURE_B)
        cloudcode_to_messages(
            build_generate_response(parts),
            model="gemini-3-flash",
            session_id="sess",
            signature_cache=cache,
        )
        assert cache.get(tool_call_fingerprint("toolu_7", "sess")) == SIGNATURE_B


class TestRoundTrip:
    """Tests for response -> next request round trips."""

    def test_round_trip_preserves_order_and_text(self):
        """Test that replaying a response keeps block order and text."""
        parts = [
            {"text": "Need the tool", "thought": True, "thoughtSignature": SIGNATURE_A},
            {"text": "Checking."},
            {"functionCall": {"name": "get_weather", "args": {"city": "Paris"}, "id": "toolu_1"}},
        ]
        model = "claude-sonnet-4-5-thinking"
        first_turn = {"role": "user", "content": "Weather in Paris?"}
        session_id = derive_session_id({"messages": [first_turn]})
        cache = SignatureCache()

        message = cloudcode_to_messages(
            build_generate_response(parts),
            model=model,
            session_id=session_id,
            signature_cache=cache,
        )

        # The client strips the signature before replaying
        replayed = [dict(block) for block in message["content"]]
        replayed[0]["signature"] = ""

        request = messages_to_cloudcode(
            {
                "model": model,
                "messages": [
                    first_turn,
                    {"role": "assistant", "content": replayed},
                    {"role": "user", "content": [
                        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "Sunny"},
                    ]},
                ],
            },
            session_id=session_id,
            signature_cache=cache,
        )

        assert request["contents"][1] == {"role": "model", "parts": parts}
        assert request["contents"][2]["parts"][0]["functionResponse"]["name"] == "get_weather"
