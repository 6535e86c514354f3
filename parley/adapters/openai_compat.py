"""OpenAI-compatible chat completions adapter.

Covers every backend exposing ``POST {endpoint}/chat/completions`` with the
OpenAI message shape: OpenAI itself, and the many hosted or self-hosted
servers that mimic it. Streaming responses are Server-Sent Events of the
form ``data: {...}`` terminated by ``data: [DONE]``; tool calls arrive as
fragments keyed by a positional index and are only surfaced once complete.
"""

import json
import logging
from typing import Any, Optional

from ..capabilities import ModelCapabilities
from ..config import ExchangeConfig
from ..models import (
    CanonicalMessage,
    FunctionCall,
    MessageRole,
    NormalizedChunk,
    ToolCallRequest,
    Usage,
    parse_arguments,
    tool_call_id,
)
from .base import BaseProviderAdapter, StreamDecoder, split_system

logger = logging.getLogger("parley.adapters.openai_compat")

DEFAULT_ENDPOINT = "https://api.openai.com/v1"
DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class ToolCallAccumulator:
    """Merges streamed tool-call fragments per positional index.

    Each fragment may carry any of ``id``, ``function.name`` and a slice of
    ``function.arguments``. Argument slices are concatenated in arrival
    order; fragments for different indices never touch each other.
    """

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, Any]] = {}

    def __bool__(self) -> bool:
        return bool(self._calls)

    def add(self, fragment: dict[str, Any]) -> None:
        index = int(fragment.get("index") or 0)
        entry = self._calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
        if fragment.get("id"):
            entry["id"] = fragment["id"]
        function = fragment.get("function") or {}
        name = function.get("name", fragment.get("name"))
        if name:
            entry["name"] = name
        arguments = function.get("arguments", fragment.get("arguments", fragment.get("args")))
        if isinstance(arguments, str):
            entry["arguments"] += arguments

    def flush(self) -> list[FunctionCall]:
        """Emit completed calls in index order and reset."""
        calls = [
            FunctionCall(
                name=entry["name"],
                args=parse_arguments(entry["arguments"]),
                id=entry["id"],
            )
            for _, entry in sorted(self._calls.items())
        ]
        self._calls = {}
        return calls


def normalize_usage(data: Optional[dict[str, Any]]) -> Optional[Usage]:
    if not data:
        return None
    details = data.get("completion_tokens_details") or {}
    return Usage(
        prompt_tokens=int(data.get("prompt_tokens") or 0),
        completion_tokens=int(data.get("completion_tokens") or 0),
        thinking_tokens=int(details.get("reasoning_tokens") or 0),
        total_tokens=int(data.get("total_tokens") or 0),
    )


def normalize_stream_event(
    event: dict[str, Any], accumulator: ToolCallAccumulator
) -> Optional[NormalizedChunk]:
    """Turn one decoded SSE event into a chunk, or ``None`` when it carries nothing."""
    chunk = NormalizedChunk(usage=normalize_usage(event.get("usage")))

    choices = event.get("choices") or []
    if choices:
        choice = choices[0]
        delta = choice.get("delta") or {}
        if delta.get("content"):
            chunk.text = delta["content"]
        reasoning = delta.get("reasoning") or delta.get("reasoning_content")
        if reasoning:
            chunk.thinking = reasoning
        for fragment in delta.get("tool_calls") or []:
            accumulator.add(fragment)

        finish_reason = choice.get("finish_reason")
        if finish_reason == "tool_calls" and accumulator:
            chunk.function_calls = accumulator.flush()
        elif finish_reason == "content_filter":
            chunk.blocked = True
            chunk.blocked_reason = "content_filter"

    return None if chunk.is_empty else chunk


class SSEStreamDecoder(StreamDecoder):
    """Line-buffered decoder for ``data: {...}`` event streams.

    Network reads are appended to a buffer from which complete
    newline-terminated lines are extracted. Lines without the data prefix
    are skipped. The ``[DONE]`` sentinel flushes pending tool calls and ends
    decoding; an unterminated trailing fragment is parsed once more on
    :meth:`close`.
    """

    def __init__(self, raw_events: Optional[list[Any]] = None) -> None:
        self._buffer = ""
        self._done = False
        self._accumulator = ToolCallAccumulator()
        self.raw_events = raw_events if raw_events is not None else []

    @property
    def done(self) -> bool:
        return self._done

    def feed(self, text: str) -> list[NormalizedChunk]:
        if self._done:
            return []
        self._buffer += text
        chunks: list[NormalizedChunk] = []
        while "\n" in self._buffer and not self._done:
            line, self._buffer = self._buffer.split("\n", 1)
            chunks.extend(self._process_line(line.rstrip("\r")))
        if self._done:
            self._buffer = ""
        return chunks

    def close(self) -> list[NormalizedChunk]:
        chunks: list[NormalizedChunk] = []
        if not self._done:
            tail, self._buffer = self._buffer.strip(), ""
            if tail:
                chunks.extend(self._process_line(tail))
        if not self._done:
            chunks.extend(self._flush())
            self._done = True
        return chunks

    def _process_line(self, line: str) -> list[NormalizedChunk]:
        if not line.startswith(DATA_PREFIX):
            return []
        payload = line[len(DATA_PREFIX) :].strip()
        if payload == DONE_SENTINEL:
            self._done = True
            return self._flush()
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable SSE payload: %.200s", payload)
            return []
        if not isinstance(event, dict):
            return []
        self.raw_events.append(event)
        chunk = normalize_stream_event(event, self._accumulator)
        return [chunk] if chunk is not None else []

    def _flush(self) -> list[NormalizedChunk]:
        if not self._accumulator:
            return []
        return [NormalizedChunk(function_calls=self._accumulator.flush())]


class OpenAICompatibleAdapter(BaseProviderAdapter):
    """Adapter for OpenAI-compatible chat completion endpoints.

    Credentials:
        api_key: Sent as ``Authorization: Bearer``.
        endpoint: Base URL, ``/chat/completions`` is appended.
    """

    provider_name = "openai"
    display_name = "OpenAI-compatible"
    default_model = "gpt-4o-mini"

    def __init__(
        self,
        *args: Any,
        name: Optional[str] = None,
        default_endpoint: str = DEFAULT_ENDPOINT,
        **kwargs: Any,
    ):
        super().__init__(*args, **kwargs)
        if name:
            self.provider_name = name
        self.default_endpoint = default_endpoint

    # ------------------------------------------------------------------
    # History mapping
    # ------------------------------------------------------------------

    def to_wire_messages(
        self, history: list[CanonicalMessage], system_instruction: Optional[str] = None
    ) -> list[dict[str, Any]]:
        system, rest = split_system(history, system_instruction)
        wire: list[dict[str, Any]] = []
        if system:
            wire.append({"role": "system", "content": system})

        for message in rest:
            if message.role == MessageRole.USER:
                wire.append({"role": "user", "content": message.content or ""})
            elif message.role == MessageRole.ASSISTANT:
                entry: dict[str, Any] = {"role": "assistant", "content": message.content}
                if message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.id or tool_call_id(tc.name, i),
                            "type": "function",
                            "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                        }
                        for i, tc in enumerate(message.tool_calls)
                    ]
                wire.append(entry)
            elif message.role == MessageRole.TOOL:
                wire.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )
        return wire

    def from_wire_messages(self, wire: list[dict[str, Any]]) -> list[CanonicalMessage]:
        history = []
        for entry in wire:
            role = entry.get("role")
            content = _text_content(entry.get("content"))
            if role == "system":
                history.append(CanonicalMessage.system(content or ""))
            elif role == "user":
                history.append(CanonicalMessage.user(content or ""))
            elif role == "assistant":
                calls = []
                for i, tc in enumerate(entry.get("tool_calls") or []):
                    function = tc.get("function") or {}
                    name = function.get("name", "")
                    arguments = function.get("arguments", "{}")
                    if not isinstance(arguments, str):
                        arguments = json.dumps(arguments, ensure_ascii=False)
                    calls.append(
                        ToolCallRequest(
                            id=tc.get("id") or tool_call_id(name, i),
                            name=name,
                            arguments=arguments,
                        )
                    )
                history.append(CanonicalMessage.assistant(content, calls))
            elif role == "tool":
                if not entry.get("tool_call_id"):
                    logger.warning("Ignoring wire tool message without tool_call_id")
                    continue
                history.append(CanonicalMessage.tool(entry["tool_call_id"], content or ""))
            else:
                logger.debug("Ignoring wire message with role %r", role)
        return history

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def build_payload(
        self,
        history: list[CanonicalMessage],
        tool_schemas: list[dict[str, Any]],
        system_instruction: Optional[str],
        config: ExchangeConfig,
        capabilities: ModelCapabilities,
        stream: bool,
    ) -> dict[str, Any]:
        messages = self.to_wire_messages(history, system_instruction)
        if not capabilities.system_prompt and messages and messages[0]["role"] == "system":
            _inline_system_prompt(messages)

        gen = config.generation
        body: dict[str, Any] = {
            "model": capabilities.wire_model,
            "messages": messages,
            "stream": stream,
        }
        if gen.temperature is not None:
            body["temperature"] = gen.temperature
        if gen.top_p is not None:
            body["top_p"] = gen.top_p
        if stream:
            body["stream_options"] = {"include_usage": True}
        if gen.max_tokens:
            body["max_tokens"] = gen.max_tokens
        if gen.stop_sequences:
            body["stop"] = list(gen.stop_sequences)
        if tool_schemas and capabilities.function_calling:
            body["tools"] = [{"type": "function", "function": schema} for schema in tool_schemas]
        if config.thinking.enabled and capabilities.thinking:
            body["reasoning_effort"] = config.thinking.reasoning_effort
        return body

    def endpoint(
        self, config: ExchangeConfig, capabilities: ModelCapabilities, stream: bool
    ) -> tuple[str, dict[str, str]]:
        base = config.credentials.get("endpoint") or self.default_endpoint
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        api_key = config.credentials.get("api_key")
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return f"{base.rstrip('/')}/chat/completions", headers

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def normalize_response(self, data: dict[str, Any]) -> NormalizedChunk:
        chunk = NormalizedChunk(usage=normalize_usage(data.get("usage")))
        choices = data.get("choices") or []
        if not choices:
            return chunk

        choice = choices[0]
        message = choice.get("message") or {}
        if message.get("content"):
            chunk.text = message["content"]
        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning:
            chunk.thinking = reasoning
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            chunk.function_calls.append(
                FunctionCall(
                    name=function.get("name", ""),
                    args=parse_arguments(function.get("arguments")),
                    id=tc.get("id"),
                )
            )
        if choice.get("finish_reason") == "content_filter":
            chunk.blocked = True
            chunk.blocked_reason = "content_filter"
        return chunk

    def new_stream_decoder(self, raw_events: list[Any]) -> SSEStreamDecoder:
        return SSEStreamDecoder(raw_events)


def _text_content(content: Any) -> Optional[str]:
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return str(content)


def _inline_system_prompt(messages: list[dict[str, Any]]) -> None:
    system = messages.pop(0)["content"]
    for message in messages:
        if message["role"] == "user":
            message["content"] = f"{system}\n\n{message['content']}"
            return
    messages.insert(0, {"role": "user", "content": system})
