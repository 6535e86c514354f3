"""Shared fixtures for the Parley test suite."""

import json
from typing import Any, Optional

import httpx
import pytest

from parley.adapters.base import BaseProviderAdapter, StreamDecoder, WireCapture
from parley.config import StaticConfigProvider
from parley.models import CanonicalMessage, NormalizedChunk
from parley.registry import ProviderRegistry


class ScriptedAdapter(BaseProviderAdapter):
    """Adapter replaying pre-scripted turns instead of calling a provider.

    Each entry of *turns* is the list of chunks one call yields. With
    ``repeat_last`` the final entry is replayed forever.
    """

    provider_name = "scripted"
    display_name = "Scripted"
    default_model = "scripted-model"

    def __init__(
        self,
        turns: list[list[NormalizedChunk]],
        name: Optional[str] = None,
        repeat_last: bool = False,
    ):
        super().__init__(http_client=httpx.Client(transport=httpx.MockTransport(_no_http)))
        if name:
            self.provider_name = name
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.calls: list[dict[str, Any]] = []

    def _next(self, history, tools, model, system_instruction, stream):
        self.calls.append(
            {
                "history": [m.to_dict() for m in history],
                "tools": [t.name for t in tools or []],
                "model": model,
                "system_instruction": system_instruction,
                "stream": stream,
            }
        )
        if not self.turns:
            raise AssertionError("Adapter called more often than scripted")
        if self.repeat_last and len(self.turns) == 1:
            chunks = self.turns[0]
        else:
            chunks = self.turns.pop(0)
        capture = WireCapture(
            provider=self.provider_name,
            model=model or self.default_model,
            request_body={"call": len(self.calls)},
        )
        return chunks, capture

    def stream_generate_content(
        self, history, tools=None, model=None, *, system_instruction=None, config=None
    ):
        chunks, capture = self._next(history, tools, model, system_instruction, True)

        def generate():
            for chunk in chunks:
                capture.raw_events.append(chunk.to_dict())
                yield chunk

        return generate(), capture

    def generate_content(
        self, history, tools=None, model=None, *, system_instruction=None, config=None
    ):
        chunks, capture = self._next(history, tools, model, system_instruction, False)
        capture.raw_response = [c.to_dict() for c in chunks]
        return chunks[0], capture

    def to_wire_messages(self, history, system_instruction=None):
        return [m.to_dict() for m in history]

    def from_wire_messages(self, wire):
        return [CanonicalMessage.from_dict(m) for m in wire]

    def build_payload(self, history, tool_schemas, system_instruction, config, capabilities, stream):
        return {}

    def endpoint(self, config, capabilities, stream):
        return "https://scripted.invalid", {}

    def normalize_response(self, data):
        return NormalizedChunk()

    def new_stream_decoder(self, raw_events) -> StreamDecoder:
        raise NotImplementedError


def _no_http(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected HTTP request to {request.url}")


def sse(*events: Any, done: bool = True) -> str:
    """Render events as an SSE body."""
    lines = [f"data: {json.dumps(e)}\n\n" for e in events]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines)


@pytest.fixture
def config_provider():
    return StaticConfigProvider(provider="scripted", model="scripted-model")


@pytest.fixture
def make_registry():
    def factory(*adapters, default="scripted", config_provider=None):
        return ProviderRegistry(adapters, config_provider=config_provider, default_provider=default)

    return factory
