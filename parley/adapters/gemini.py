"""Google Gemini adapter (parts-style protocol).

Talks either to the Generative Language API (API key) or to Vertex AI
(project, region and OAuth access token). History entries are
``{role, parts}`` objects where a part is ``text``, ``functionCall`` or
``functionResponse``; a text part flagged ``thought: true`` is reasoning
and is surfaced as ``thinking``, never as answer text.

The streaming endpoint returns a JSON array delivered piecewise
(``[{...},\\r\\n{...}]``); :class:`JsonArrayStreamDecoder` extracts each
complete top-level object as soon as its closing brace arrives.
"""

import json
import logging
from typing import Any, Optional

from ..capabilities import ModelCapabilities
from ..config import ExchangeConfig
from ..exceptions import ProviderError
from ..models import (
    CanonicalMessage,
    FunctionCall,
    MessageRole,
    NormalizedChunk,
    ToolCallRequest,
    Usage,
    tool_call_id,
)
from .base import BaseProviderAdapter, StreamDecoder, split_system

logger = logging.getLogger("parley.adapters.gemini")

GENERATIVE_LANGUAGE_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:{method}"
VERTEX_URL = (
    "https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}"
    "/publishers/google/models/{model}:{method}"
)
DEFAULT_REGION = "europe-west1"

HARM_CATEGORIES = {
    "hate_speech": "HARM_CATEGORY_HATE_SPEECH",
    "dangerous_content": "HARM_CATEGORY_DANGEROUS_CONTENT",
    "harassment": "HARM_CATEGORY_HARASSMENT",
    "sexually_explicit": "HARM_CATEGORY_SEXUALLY_EXPLICIT",
}
DEFAULT_SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"
BLOCKING_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


class BraceScanner:
    """Resumable matcher for the brace closing an object that opens at ``text[0]``.

    The scan position and nesting state survive between calls, so a buffer
    that grows one network read at a time is only ever scanned once.
    Call :meth:`reset` after the matched object has been removed from the
    buffer.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.position = 0
        self.depth = 0
        self.in_string = False
        self.escaped = False

    def scan(self, text: str) -> Optional[int]:
        """Index of the closing brace, or ``None`` when the object is incomplete."""
        for i in range(self.position, len(text)):
            char = text[i]
            if self.in_string:
                if self.escaped:
                    self.escaped = False
                elif char == "\\":
                    self.escaped = True
                elif char == '"':
                    self.in_string = False
            elif char == '"':
                self.in_string = True
            elif char == "{":
                self.depth += 1
            elif char == "}":
                self.depth -= 1
                if self.depth == 0:
                    self.position = i + 1
                    return i
        self.position = len(text)
        return None


def find_object_end(text: str) -> Optional[int]:
    """Index of the brace closing the object that opens at ``text[0]``.

    Braces inside string literals (including escaped quotes) are ignored.
    Returns ``None`` when the object is not complete yet.
    """
    return BraceScanner().scan(text)


def normalize_usage(data: Optional[dict[str, Any]]) -> Optional[Usage]:
    if not data:
        return None
    return Usage(
        prompt_tokens=int(data.get("promptTokenCount") or 0),
        completion_tokens=int(data.get("candidatesTokenCount") or 0),
        thinking_tokens=int(data.get("thoughtsTokenCount") or 0),
        total_tokens=int(data.get("totalTokenCount") or 0),
    )


def normalize_response(data: dict[str, Any]) -> NormalizedChunk:
    """Normalize one ``GenerateContentResponse`` object."""
    if "error" in data:
        error = data["error"] or {}
        raise ProviderError(
            f"Gemini API error: {error.get('message', error)}",
            provider="gemini",
            status_code=error.get("code"),
        )

    chunk = NormalizedChunk(usage=normalize_usage(data.get("usageMetadata")))
    candidates = data.get("candidates") or []
    candidate = candidates[0] if candidates else {}

    for rating in candidate.get("safetyRatings") or []:
        category = rating.get("category", "UNKNOWN")
        chunk.safety_ratings[category] = rating.get("probability")
        if rating.get("blocked") and not chunk.blocked:
            chunk.blocked = True
            chunk.blocked_reason = category

    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    finish_reason = candidate.get("finishReason")
    if not chunk.blocked and block_reason:
        chunk.blocked = True
        chunk.blocked_reason = block_reason
    elif not chunk.blocked and finish_reason in BLOCKING_FINISH_REASONS:
        chunk.blocked = True
        chunk.blocked_reason = finish_reason

    text_parts = []
    thinking_parts = []
    for part in (candidate.get("content") or {}).get("parts") or []:
        if part.get("thought") is True:
            thinking_parts.append(part.get("text", ""))
        elif "text" in part:
            text_parts.append(part["text"])
        elif "functionCall" in part:
            call = part["functionCall"]
            name = call.get("name", "")
            chunk.function_calls.append(
                FunctionCall(
                    name=name,
                    args=call.get("args") or {},
                    id=call.get("id") or tool_call_id(name, len(chunk.function_calls)),
                )
            )

    if text_parts:
        chunk.text = "".join(text_parts)
    if thinking_parts:
        chunk.thinking = "".join(thinking_parts)
    return chunk


class JsonArrayStreamDecoder(StreamDecoder):
    """Extracts top-level objects from a streamed JSON array."""

    def __init__(self, raw_events: Optional[list[Any]] = None) -> None:
        self._buffer = ""
        self._scanner = BraceScanner()
        self.raw_events = raw_events if raw_events is not None else []

    def feed(self, text: str) -> list[NormalizedChunk]:
        self._buffer += text
        return self._drain()

    def close(self) -> list[NormalizedChunk]:
        chunks = self._drain()
        leftover = self._buffer.strip(" \t\r\n,[]")
        if leftover:
            logger.warning("Discarding %d bytes of incomplete stream data", len(leftover))
        self._buffer = ""
        self._scanner.reset()
        return chunks

    def _drain(self) -> list[NormalizedChunk]:
        chunks = []
        while True:
            self._buffer = self._buffer.lstrip(" \t\r\n,")
            if not self._buffer:
                break
            if self._buffer[0] != "{":
                # array punctuation or stray bytes between objects
                self._buffer = self._buffer[1:]
                continue
            end = self._scanner.scan(self._buffer)
            if end is None:
                break
            raw, self._buffer = self._buffer[: end + 1], self._buffer[end + 1 :]
            self._scanner.reset()
            try:
                event = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Skipping undecodable stream object: %.200s", raw)
                continue
            if not isinstance(event, dict):
                continue
            self.raw_events.append(event)
            chunk = normalize_response(event)
            if not chunk.is_empty:
                chunks.append(chunk)
        return chunks


class GeminiAdapter(BaseProviderAdapter):
    """Adapter for Google Gemini models.

    Credentials:
        api_key: Generative Language API key (``x-goog-api-key`` header).
        project_id, region, access_token: Vertex AI endpoint with a Bearer
            token. Takes precedence over ``api_key`` when ``project_id`` is set.
    """

    provider_name = "gemini"
    display_name = "Gemini"
    default_model = "gemini-2.5-flash"

    # ------------------------------------------------------------------
    # History mapping
    # ------------------------------------------------------------------

    def to_wire_messages(
        self, history: list[CanonicalMessage], system_instruction: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """Convert canonical history to ``contents``.

        System messages are not part of ``contents``; they are sent as
        ``system_instruction`` by :meth:`build_payload`. Tool results are
        sent verbatim as ``{"content": text}`` so that they map back to the
        exact same string.
        """
        _, rest = split_system(history, system_instruction)
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}

        for message in rest:
            if message.role == MessageRole.USER:
                contents.append({"role": "user", "parts": [{"text": message.content or ""}]})
            elif message.role == MessageRole.ASSISTANT:
                parts: list[dict[str, Any]] = []
                if message.content:
                    parts.append({"text": message.content})
                for tc in message.tool_calls:
                    call_names[tc.id] = tc.name
                    parts.append(
                        {
                            "functionCall": {
                                "id": tc.id,
                                "name": tc.name,
                                "args": tc.parsed_arguments(),
                            }
                        }
                    )
                if parts:
                    contents.append({"role": "model", "parts": parts})
            elif message.role == MessageRole.TOOL:
                name = call_names.get(message.tool_call_id or "")
                if name is None:
                    logger.warning(
                        "Tool result %s has no matching call in history", message.tool_call_id
                    )
                    name = ""
                part = {
                    "functionResponse": {
                        "id": message.tool_call_id,
                        "name": name,
                        "response": {"content": message.content or ""},
                    }
                }
                # all responses to one model turn share a single function content
                if contents and contents[-1]["role"] == "function":
                    contents[-1]["parts"].append(part)
                else:
                    contents.append({"role": "function", "parts": [part]})
        return contents

    def from_wire_messages(self, wire: list[dict[str, Any]]) -> list[CanonicalMessage]:
        history: list[CanonicalMessage] = []
        sequence = 0
        unanswered: list[tuple[str, str]] = []

        for entry in wire:
            role = entry.get("role")
            parts = entry.get("parts") or []
            if role == "user":
                text = "".join(p.get("text", "") for p in parts if "text" in p)
                history.append(CanonicalMessage.user(text))
            elif role == "model":
                texts = [p["text"] for p in parts if "text" in p and p.get("thought") is not True]
                calls = []
                for part in parts:
                    if "functionCall" not in part:
                        continue
                    call = part["functionCall"]
                    name = call.get("name", "")
                    call_id = call.get("id") or tool_call_id(name, sequence)
                    sequence += 1
                    unanswered.append((call_id, name))
                    calls.append(
                        ToolCallRequest(
                            id=call_id,
                            name=name,
                            arguments=json.dumps(call.get("args") or {}, ensure_ascii=False),
                        )
                    )
                history.append(CanonicalMessage.assistant("".join(texts) or None, calls))
            elif role in ("function", "tool"):
                for part in parts:
                    if "functionResponse" not in part:
                        continue
                    response = part["functionResponse"]
                    call_id = response.get("id") or _take_unanswered(
                        unanswered, response.get("name", "")
                    )
                    unanswered[:] = [u for u in unanswered if u[0] != call_id]
                    history.append(
                        CanonicalMessage.tool(call_id, _tool_content(response.get("response")))
                    )
            else:
                logger.debug("Ignoring wire content with role %r", role)
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
        system, _ = split_system(history, system_instruction)
        contents = self.to_wire_messages(history, system_instruction)
        body: dict[str, Any] = {}

        if system and capabilities.system_prompt:
            body["system_instruction"] = {"parts": [{"text": system}]}
        elif system:
            contents.insert(0, {"role": "user", "parts": [{"text": system}]})
        body["contents"] = contents

        generation = self._generation_config(config, capabilities)
        if generation:
            body["generationConfig"] = generation
        body["safetySettings"] = self._safety_settings(config, capabilities)

        if tool_schemas and capabilities.function_calling:
            body["tools"] = [
                {"function_declarations": [_function_declaration(s) for s in tool_schemas]}
            ]
        return body

    def endpoint(
        self, config: ExchangeConfig, capabilities: ModelCapabilities, stream: bool
    ) -> tuple[str, dict[str, str]]:
        method = "streamGenerateContent" if stream else "generateContent"
        credentials = config.credentials
        headers = {"Content-Type": "application/json"}

        project = credentials.get("project_id")
        if project:
            url = VERTEX_URL.format(
                region=credentials.get("region") or DEFAULT_REGION,
                project=project,
                model=capabilities.wire_model,
                method=method,
            )
            if credentials.get("access_token"):
                headers["Authorization"] = f"Bearer {credentials['access_token']}"
        else:
            url = GENERATIVE_LANGUAGE_URL.format(model=capabilities.wire_model, method=method)
            if credentials.get("api_key"):
                headers["x-goog-api-key"] = credentials["api_key"]
        return url, headers

    @staticmethod
    def _generation_config(
        config: ExchangeConfig, capabilities: ModelCapabilities
    ) -> dict[str, Any]:
        gen = config.generation
        generation: dict[str, Any] = {}
        if gen.temperature is not None:
            generation["temperature"] = gen.temperature
        if gen.top_p is not None:
            generation["topP"] = gen.top_p
        if gen.top_k is not None and capabilities.top_k:
            generation["topK"] = gen.top_k
        if gen.max_tokens:
            generation["maxOutputTokens"] = gen.max_tokens
        if gen.stop_sequences:
            generation["stopSequences"] = list(gen.stop_sequences)
        if config.thinking.enabled and capabilities.thinking:
            generation["thinkingConfig"] = {
                "thinkingBudget": config.thinking.budget,
                "includeThoughts": config.thinking.include_thoughts,
            }
        return generation

    @staticmethod
    def _safety_settings(
        config: ExchangeConfig, capabilities: ModelCapabilities
    ) -> list[dict[str, str]]:
        if not (config.safety.enabled and capabilities.safety_settings):
            return [
                {"category": category, "threshold": "BLOCK_NONE"}
                for category in HARM_CATEGORIES.values()
            ]
        thresholds = config.safety.thresholds
        return [
            {
                "category": category,
                "threshold": thresholds.get(key, thresholds.get(category, DEFAULT_SAFETY_THRESHOLD)),
            }
            for key, category in HARM_CATEGORIES.items()
        ]

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def normalize_response(self, data: dict[str, Any]) -> NormalizedChunk:
        return normalize_response(data)

    def new_stream_decoder(self, raw_events: list[Any]) -> JsonArrayStreamDecoder:
        return JsonArrayStreamDecoder(raw_events)


def _function_declaration(schema: dict[str, Any]) -> dict[str, Any]:
    declaration = {"name": schema["name"], "description": schema.get("description", "")}
    parameters = schema.get("parameters") or {}
    if parameters.get("properties"):
        declaration["parameters"] = parameters
    return declaration


def _tool_content(response: Any) -> str:
    if isinstance(response, dict) and set(response) == {"content"} and isinstance(
        response["content"], str
    ):
        return response["content"]
    return json.dumps(response, ensure_ascii=False)


def _take_unanswered(unanswered: list[tuple[str, str]], name: str) -> str:
    for call_id, call_name in unanswered:
        if call_name == name:
            return call_id
    return tool_call_id(name, len(unanswered))
