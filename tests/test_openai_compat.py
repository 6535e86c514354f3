"""
Tests for the OpenAI-compatible adapter.

Covers tool-call fragment accumulation, the SSE line decoder, payload
construction, synchronous normalization, HTTP error mapping and the
history <-> wire mapping.
"""

import json

import httpx
import pytest
from conftest import sse

from parley.adapters.openai_compat import (
    OpenAICompatibleAdapter,
    SSEStreamDecoder,
    ToolCallAccumulator,
    normalize_stream_event,
)
from parley.config import ExchangeConfig, GenerationConfig, ThinkingConfig
from parley.exceptions import (
    ProviderAuthenticationError,
    ProviderConnectionError,
    ProviderError,
    ProviderQuotaError,
    ProviderUnavailableError,
)
from parley.models import CanonicalMessage, ToolCallRequest
from parley.tools import ToolDef

API_KEY = "sk-test-0123456789abcdef"


def make_config(**kwargs) -> ExchangeConfig:
    defaults = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "credentials": {"api_key": API_KEY, "endpoint": "https://llm.example.com/v1"},
    }
    defaults.update(kwargs)
    return ExchangeConfig(**defaults)


def make_adapter(handler) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(http_client=httpx.Client(transport=httpx.MockTransport(handler)))


def text_event(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


def tool_fragment(index: int, name=None, arguments=None, id=None) -> dict:
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    fragment = {"index": index, "function": function}
    if id is not None:
        fragment["id"] = id
    return {"choices": [{"index": 0, "delta": {"tool_calls": [fragment]}}]}


FINISH_TOOL_CALLS = {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}


# ---------------------------------------------------------------------------
# Tool-call accumulation
# ---------------------------------------------------------------------------


class TestToolCallAccumulator:
    def test_fragments_for_one_index_merge(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "name": "f"})
        acc.add({"index": 0, "args": '{"a"'})
        acc.add({"index": 0, "args": ":1}"})

        calls = acc.flush()

        assert len(calls) == 1
        assert calls[0].name == "f"
        assert calls[0].args == {"a": 1}

    def test_interleaved_index_does_not_corrupt_other_buffer(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "function": {"name": "f"}})
        acc.add({"index": 0, "function": {"arguments": '{"a"'}})
        acc.add({"index": 1, "function": {"name": "g", "arguments": '{"b":'}})
        acc.add({"index": 0, "function": {"arguments": ":1}"}})
        acc.add({"index": 1, "function": {"arguments": "2}"}})

        calls = acc.flush()

        assert [(c.name, c.args) for c in calls] == [("f", {"a": 1}), ("g", {"b": 2})]

    def test_flush_orders_by_index_and_resets(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 2, "id": "call_z", "function": {"name": "late", "arguments": "{}"}})
        acc.add({"index": 0, "id": "call_a", "function": {"name": "early", "arguments": "{}"}})

        calls = acc.flush()

        assert [c.name for c in calls] == ["early", "late"]
        assert [c.id for c in calls] == ["call_a", "call_z"]
        assert not acc
        assert acc.flush() == []

    def test_malformed_arguments_degrade_to_empty_map(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "function": {"name": "f", "arguments": '{"a":'}})

        assert acc.flush()[0].args == {}

    def test_non_object_arguments_degrade_to_empty_map(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "function": {"name": "f", "arguments": "[1, 2]"}})

        assert acc.flush()[0].args == {}

    def test_missing_id_is_left_for_the_caller(self):
        acc = ToolCallAccumulator()
        acc.add({"index": 0, "function": {"name": "f", "arguments": "{}"}})

        assert acc.flush()[0].id is None


# ---------------------------------------------------------------------------
# Event normalization
# ---------------------------------------------------------------------------


class TestNormalizeStreamEvent:
    def test_content_becomes_text(self):
        chunk = normalize_stream_event(text_event("Hi"), ToolCallAccumulator())
        assert chunk.text == "Hi"
        assert chunk.thinking is None

    def test_reasoning_becomes_thinking(self):
        event = {"choices": [{"delta": {"reasoning_content": "Let me think"}}]}
        chunk = normalize_stream_event(event, ToolCallAccumulator())
        assert chunk.thinking == "Let me think"
        assert chunk.text is None

    def test_usage_merges_with_text_in_same_event(self):
        event = text_event("!")
        event["usage"] = {
            "prompt_tokens": 10,
            "completion_tokens": 4,
            "total_tokens": 14,
            "completion_tokens_details": {"reasoning_tokens": 2},
        }
        chunk = normalize_stream_event(event, ToolCallAccumulator())

        assert chunk.text == "!"
        assert chunk.usage.prompt_tokens == 10
        assert chunk.usage.thinking_tokens == 2
        assert chunk.usage.total_tokens == 14

    def test_usage_only_event(self):
        event = {"choices": [], "usage": {"prompt_tokens": 1, "total_tokens": 1}}
        chunk = normalize_stream_event(event, ToolCallAccumulator())
        assert chunk.usage.total_tokens == 1

    def test_empty_delta_is_dropped(self):
        assert normalize_stream_event({"choices": [{"delta": {}}]}, ToolCallAccumulator()) is None

    def test_content_filter_marks_blocked(self):
        event = {"choices": [{"delta": {}, "finish_reason": "content_filter"}]}
        chunk = normalize_stream_event(event, ToolCallAccumulator())
        assert chunk.blocked is True
        assert chunk.blocked_reason == "content_filter"


# ---------------------------------------------------------------------------
# SSE decoder
# ---------------------------------------------------------------------------


class TestSSEStreamDecoder:
    def decode(self, body: str, step: int = 0):
        decoder = SSEStreamDecoder()
        chunks = []
        if step:
            for i in range(0, len(body), step):
                chunks.extend(decoder.feed(body[i : i + step]))
        else:
            chunks.extend(decoder.feed(body))
        chunks.extend(decoder.close())
        return chunks, decoder

    def test_text_is_emitted_in_order(self):
        chunks, _ = self.decode(sse(text_event("Hel"), text_event("lo"), text_event("!")))
        assert "".join(c.text for c in chunks) == "Hello!"

    @pytest.mark.parametrize("step", [1, 3, 7])
    def test_arbitrary_network_reads(self, step):
        body = sse(text_event("Bonjour "), text_event("à "), text_event("tous"))
        chunks, _ = self.decode(body, step=step)
        assert "".join(c.text for c in chunks) == "Bonjour à tous"

    def test_crlf_line_endings(self):
        body = sse(text_event("a"), text_event("b")).replace("\n", "\r\n")
        chunks, _ = self.decode(body)
        assert [c.text for c in chunks] == ["a", "b"]

    def test_lines_without_data_prefix_are_skipped(self):
        body = ": keep-alive\nevent: message\nid: 4\n\n" + sse(text_event("ok"))
        chunks, _ = self.decode(body)
        assert [c.text for c in chunks] == ["ok"]

    def test_undecodable_payload_is_skipped(self):
        body = "data: {not json\n\n" + sse(text_event("ok"))
        chunks, _ = self.decode(body)
        assert [c.text for c in chunks] == ["ok"]

    def test_incremental_tool_call_completes_on_finish_reason(self):
        body = sse(
            tool_fragment(0, name="get_weather", arguments="", id="call_1"),
            tool_fragment(0, arguments='{"city"'),
            tool_fragment(0, arguments=':"Paris"}'),
            FINISH_TOOL_CALLS,
        )
        chunks, _ = self.decode(body, step=5)

        calls = [fc for c in chunks for fc in c.function_calls]
        assert len(calls) == 1
        assert calls[0].name == "get_weather"
        assert calls[0].args == {"city": "Paris"}
        assert calls[0].id == "call_1"

    def test_tool_calls_are_not_surfaced_before_completion(self):
        decoder = SSEStreamDecoder()
        partial = sse(
            tool_fragment(0, name="f", arguments='{"a"'), done=False
        )
        assert decoder.feed(partial) == []

    def test_done_sentinel_flushes_pending_tool_calls(self):
        body = sse(tool_fragment(0, name="f", arguments='{"a":1}'))
        chunks, decoder = self.decode(body)

        assert decoder.done
        assert chunks[-1].function_calls[0].args == {"a": 1}

    def test_stream_end_without_sentinel_flushes_pending_tool_calls(self):
        body = sse(tool_fragment(0, name="f", arguments='{"a":1}'), done=False)
        chunks, _ = self.decode(body)
        assert chunks[-1].function_calls[0].name == "f"

    def test_unclosed_arguments_yield_empty_map(self):
        body = sse(tool_fragment(0, name="f", arguments='{"a":'), done=False)
        chunks, _ = self.decode(body)
        assert chunks[-1].function_calls[0].args == {}

    def test_trailing_fragment_is_parsed_on_close(self):
        decoder = SSEStreamDecoder()
        body = "data: " + json.dumps(text_event("tail"))

        assert decoder.feed(body) == []
        chunks = decoder.close()
        assert [c.text for c in chunks] == ["tail"]

    def test_data_after_sentinel_is_ignored(self):
        body = sse(text_event("a")) + sse(text_event("b"))
        chunks, _ = self.decode(body)
        assert [c.text for c in chunks] == ["a"]

    def test_raw_events_are_recorded(self):
        raw = []
        decoder = SSEStreamDecoder(raw)
        decoder.feed(sse(text_event("a"), {"choices": [{"delta": {}}]}))
        decoder.close()
        assert raw == [text_event("a"), {"choices": [{"delta": {}}]}]


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class TestPayload:
    def build(self, adapter, config, tools=(), stream=True, system="Be brief."):
        caps = adapter.capabilities.get_capabilities(config.model)
        schemas = [t.to_schema() for t in tools]
        return adapter.build_payload(
            [CanonicalMessage.user("Hi")], schemas, system, config, caps, stream
        )

    def test_streaming_payload(self):
        adapter = OpenAICompatibleAdapter()
        config = make_config(
            generation=GenerationConfig(
                temperature=0.2, top_p=0.9, max_tokens=256, stop_sequences=["END"]
            )
        )
        weather = ToolDef(name="get_weather", description="Weather.")

        body = self.build(adapter, config, tools=[weather])

        assert body["model"] == "gpt-4o-mini"
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["temperature"] == 0.2
        assert body["top_p"] == 0.9
        assert body["max_tokens"] == 256
        assert body["stop"] == ["END"]
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert body["tools"] == [{"type": "function", "function": weather.to_schema()}]
        assert "reasoning_effort" not in body

    def test_sync_payload_has_no_stream_options(self):
        body = self.build(OpenAICompatibleAdapter(), make_config(), stream=False)
        assert body["stream"] is False
        assert "stream_options" not in body
        assert "tools" not in body

    def test_reasoning_effort_only_for_thinking_models(self):
        adapter = OpenAICompatibleAdapter()
        thinking = ThinkingConfig(enabled=True, reasoning_effort="high")

        body = self.build(adapter, make_config(model="o3-mini", thinking=thinking))
        assert body["reasoning_effort"] == "high"

        body = self.build(adapter, make_config(model="gpt-4o-mini", thinking=thinking))
        assert "reasoning_effort" not in body

    def test_system_prompt_inlined_when_unsupported(self):
        adapter = OpenAICompatibleAdapter()
        adapter.capabilities.register("tiny-model", provider="openai", system_prompt=False)

        body = self.build(adapter, make_config(model="tiny-model"))

        assert body["messages"] == [{"role": "user", "content": "Be brief.\n\nHi"}]

    def test_endpoint_and_headers(self):
        adapter = OpenAICompatibleAdapter()
        config = make_config()
        caps = adapter.capabilities.get_capabilities("gpt-4o-mini")

        url, headers = adapter.endpoint(config, caps, stream=True)

        assert url == "https://llm.example.com/v1/chat/completions"
        assert headers["Authorization"] == f"Bearer {API_KEY}"
        assert headers["Accept"] == "text/event-stream"


# ---------------------------------------------------------------------------
# HTTP round trips
# ---------------------------------------------------------------------------


class TestHttp:
    def test_stream_generate_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            body = sse(
                text_event("It is "),
                text_event("18°C."),
                {
                    "choices": [{"delta": {}, "finish_reason": "stop"}],
                    "usage": {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
                },
            )
            return httpx.Response(200, text=body)

        adapter = make_adapter(handler)
        chunks, capture = adapter.stream_generate_content(
            [CanonicalMessage.user("Weather?")], [], config=make_config()
        )

        assert capture.request_body["messages"] == [{"role": "user", "content": "Weather?"}]
        assert capture.raw_events == []

        collected = list(chunks)

        assert "".join(c.text or "" for c in collected) == "It is 18°C."
        assert collected[-1].usage.total_tokens == 8
        assert seen["url"] == "https://llm.example.com/v1/chat/completions"
        assert seen["body"]["stream"] is True
        assert len(capture.raw_events) == 3
        assert capture.request_params["model"] == "gpt-4o-mini"

    def test_generate_content(self):
        response = {
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "reasoning_content": "Need weather.",
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {
                                    "name": "get_weather",
                                    "arguments": '{"city": "Paris"}',
                                },
                            }
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ],
            "usage": {"prompt_tokens": 7, "completion_tokens": 2, "total_tokens": 9},
        }
        adapter = make_adapter(lambda request: httpx.Response(200, json=response))

        chunk, capture = adapter.generate_content(
            [CanonicalMessage.user("Weather?")], [], config=make_config()
        )

        assert chunk.text is None
        assert chunk.thinking == "Need weather."
        assert chunk.function_calls[0].id == "call_9"
        assert chunk.function_calls[0].args == {"city": "Paris"}
        assert chunk.usage.prompt_tokens == 7
        assert capture.raw_response == response

    def test_history_is_not_mutated(self):
        history = [CanonicalMessage.user("Hi")]
        snapshot = [m.to_dict() for m in history]
        adapter = make_adapter(lambda r: httpx.Response(200, text=sse(text_event("ok"))))

        chunks, _ = adapter.stream_generate_content(history, [], config=make_config())
        list(chunks)

        assert [m.to_dict() for m in history] == snapshot

    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (401, ProviderAuthenticationError),
            (403, ProviderAuthenticationError),
            (429, ProviderQuotaError),
            (500, ProviderUnavailableError),
            (503, ProviderUnavailableError),
            (400, ProviderError),
        ],
    )
    def test_status_mapping(self, status, error_cls):
        body = {"error": {"message": f"rejected key {API_KEY}"}}
        adapter = make_adapter(lambda request: httpx.Response(status, json=body))

        with pytest.raises(error_cls) as exc_info:
            adapter.generate_content([CanonicalMessage.user("Hi")], [], config=make_config())

        error = exc_info.value
        assert error.status_code == status
        assert error.provider == "openai"
        assert API_KEY not in str(error)
        assert "[REDACTED]" in str(error)

    def test_stream_error_raised_on_iteration(self):
        adapter = make_adapter(lambda request: httpx.Response(503, text="overloaded"))

        chunks, _ = adapter.stream_generate_content(
            [CanonicalMessage.user("Hi")], [], config=make_config()
        )

        with pytest.raises(ProviderUnavailableError, match="overloaded"):
            list(chunks)

    def test_connection_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError(f"connect failed with key={API_KEY}", request=request)

        adapter = make_adapter(handler)

        with pytest.raises(ProviderConnectionError) as exc_info:
            adapter.generate_content([CanonicalMessage.user("Hi")], [], config=make_config())
        assert API_KEY not in str(exc_info.value)

    def test_named_instance(self):
        adapter = OpenAICompatibleAdapter(name="ovh", default_endpoint="https://ovh.example/v1")
        assert adapter.provider_name == "ovh"
        caps = adapter.capabilities.get_capabilities("gpt-oss-120b")
        url, _ = adapter.endpoint(ExchangeConfig(provider="ovh"), caps, stream=False)
        assert url == "https://ovh.example/v1/chat/completions"


# ---------------------------------------------------------------------------
# History mapping
# ---------------------------------------------------------------------------


class TestWireMapping:
    def history(self):
        return [
            CanonicalMessage.user("Weather in Paris and Lyon?"),
            CanonicalMessage.assistant(
                None,
                [
                    ToolCallRequest(id="call_p", name="get_weather", arguments='{"city": "Paris"}'),
                    ToolCallRequest(id="call_l", name="get_weather", arguments='{"city": "Lyon"}'),
                ],
            ),
            CanonicalMessage.tool("call_p", "18°C"),
            CanonicalMessage.tool("call_l", "21°C"),
            CanonicalMessage.assistant("Paris 18°C, Lyon 21°C."),
        ]

    def test_round_trip(self):
        adapter = OpenAICompatibleAdapter()
        history = self.history()

        assert adapter.from_wire_messages(adapter.to_wire_messages(history)) == history

    def test_assistant_turn_carries_content_and_tool_calls(self):
        wire = OpenAICompatibleAdapter().to_wire_messages(self.history())

        assistant = wire[1]
        assert assistant["role"] == "assistant"
        assert assistant["content"] is None
        assert [tc["id"] for tc in assistant["tool_calls"]] == ["call_p", "call_l"]
        assert assistant["tool_calls"][0]["type"] == "function"
        assert wire[2] == {"role": "tool", "tool_call_id": "call_p", "content": "18°C"}

    def test_missing_ids_are_derived_deterministically(self):
        adapter = OpenAICompatibleAdapter()
        wire = [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"type": "function", "function": {"name": "f", "arguments": "{}"}}],
            }
        ]

        first = adapter.from_wire_messages(wire)[0].tool_calls[0].id
        second = adapter.from_wire_messages(wire)[0].tool_calls[0].id

        assert first == second
        assert first.startswith("call_")

    def test_tool_message_without_id_is_skipped(self, caplog):
        wire = [
            {"role": "user", "content": "Hi"},
            {"role": "tool", "content": "orphan"},
            {"role": "assistant", "content": "Hello"},
        ]

        with caplog.at_level("WARNING", logger="parley.adapters.openai_compat"):
            history = OpenAICompatibleAdapter().from_wire_messages(wire)

        assert [m.role.value for m in history] == ["user", "assistant"]
        assert "tool_call_id" in caplog.text
