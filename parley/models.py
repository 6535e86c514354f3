"""
Parley - Canonical conversation protocol.

Every provider adapter speaks its own wire dialect; everything above the
adapters speaks the types defined here: canonical history messages,
tool-call requests, normalized response chunks, exchange results and
the diagnostic trace records.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class MessageRole(str, Enum):
    """Role of a canonical history message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ExchangeState(str, Enum):
    """States of one orchestrated exchange."""

    IDLE = "idle"
    REQUESTING = "requesting"
    PROCESSING = "processing"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"


def tool_call_id(name: str, index: int) -> str:
    """Derive a stable tool-call identifier from a function name and a sequence index."""
    digest = hashlib.md5(f"{name}{index}".encode("utf-8")).hexdigest()
    return f"call_{digest[:12]}"


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Parse tool-call arguments, degrading to an empty map.

    Accepts raw JSON text or an already decoded mapping. Anything that does
    not decode to a JSON object yields ``{}``.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass
class ToolCallRequest:
    """A tool invocation requested by the model inside an assistant turn.

    ``arguments`` keeps the raw JSON text exactly as the provider produced
    it; :meth:`parsed_arguments` decodes it on demand.
    """

    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict[str, Any]:
        return parse_arguments(self.arguments)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRequest":
        arguments = data.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments, ensure_ascii=False)
        return cls(id=data.get("id", ""), name=data.get("name", ""), arguments=arguments)


@dataclass
class CanonicalMessage:
    """One turn of conversation history in provider-neutral form."""

    role: MessageRole
    content: Optional[str] = None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def __post_init__(self) -> None:
        self.role = MessageRole(self.role)
        if self.role == MessageRole.TOOL:
            if not self.tool_call_id or self.content is None:
                raise ValueError("A tool message requires both tool_call_id and content")
        elif self.tool_call_id is not None:
            raise ValueError("Only tool messages may carry a tool_call_id")
        if self.tool_calls and self.role != MessageRole.ASSISTANT:
            raise ValueError("Only assistant messages may carry tool_calls")

    @classmethod
    def system(cls, content: str) -> "CanonicalMessage":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "CanonicalMessage":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: Optional[str] = None,
        tool_calls: Optional[list[ToolCallRequest]] = None,
    ) -> "CanonicalMessage":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "CanonicalMessage":
        return cls(role=MessageRole.TOOL, content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            result["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalMessage":
        return cls(
            role=MessageRole(data["role"]),
            content=data.get("content"),
            tool_calls=[ToolCallRequest.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
        )


@dataclass
class FunctionCall:
    """A fully accumulated tool call surfaced by an adapter."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}


@dataclass
class Usage:
    """Token accounting reported by a provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    thinking_tokens: int = 0
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return not (
            self.prompt_tokens or self.completion_tokens or self.thinking_tokens or self.total_tokens
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "thinking_tokens": self.thinking_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Usage":
        data = data or {}
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            thinking_tokens=int(data.get("thinking_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
        )


@dataclass
class NormalizedChunk:
    """The single output unit of every provider adapter.

    A chunk carries at most a slice of the model output. Accumulation
    across chunks and turns belongs to the orchestrator.
    """

    text: Optional[str] = None
    thinking: Optional[str] = None
    function_calls: list[FunctionCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    safety_ratings: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False
    blocked_reason: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.text
            and not self.thinking
            and not self.function_calls
            and (self.usage is None or self.usage.is_empty)
            and not self.safety_ratings
            and not self.blocked
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "thinking": self.thinking,
            "function_calls": [fc.to_dict() for fc in self.function_calls],
            "usage": self.usage.to_dict() if self.usage else None,
            "safety_ratings": self.safety_ratings,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
        }


@dataclass
class ExchangeResult:
    """Outcome of one :meth:`ChatOrchestrator.ask` call.

    Attributes:
        usage: Token usage of the whole exchange. Within a turn the last
            usage report wins; the per-turn figures are then summed over
            every turn of the exchange.
        safety: Safety ratings of the last chunk that carried any.
        cost: Estimated USD cost of ``usage`` from the model's pricing
            profile, ``None`` when the model has no pricing.
    """

    answer: str = ""
    debug_id: Optional[str] = None
    thinking: str = ""
    usage: Usage = field(default_factory=Usage)
    safety: dict[str, Any] = field(default_factory=dict)
    model: str = "unknown"
    provider: Optional[str] = None
    state: ExchangeState = ExchangeState.IDLE
    history: list[CanonicalMessage] = field(default_factory=list)
    turns: int = 0
    cost: Optional[float] = None

    @property
    def max_turns_exceeded(self) -> bool:
        return self.state == ExchangeState.MAX_TURNS_EXCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "debug_id": self.debug_id,
            "usage": self.usage.to_dict(),
            "safety": self.safety,
            "model": self.model,
        }


# ---------------------------------------------------------------------------
# Diagnostic trace records
# ---------------------------------------------------------------------------


@dataclass
class TurnRecord:
    """Accumulated output of one model turn."""

    turn: int
    text: str = ""
    thinking: str = ""
    function_calls: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    safety_ratings: dict[str, Any] = field(default_factory=dict)
    blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn": self.turn,
            "text": self.text,
            "thinking": self.thinking,
            "function_calls": self.function_calls,
            "usage": self.usage,
            "safety_ratings": self.safety_ratings,
            "blocked": self.blocked,
        }


@dataclass
class ToolExecutionRecord:
    """One dispatched tool call as recorded in a trace."""

    tool_name: str
    arguments: dict[str, Any]
    result_preview: Optional[str]
    tool_call_id: Optional[str] = None
    found: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "tool_call_id": self.tool_call_id,
            "arguments": self.arguments,
            "result_preview": self.result_preview,
            "found": self.found,
        }


@dataclass
class ExchangeTrace:
    """Complete diagnostic record of one exchange."""

    exchange_id: str
    debug_id: Optional[str] = None
    debug: bool = False
    system_prompt: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)
    preset_config: Optional[dict[str, Any]] = None
    history: list[dict[str, Any]] = field(default_factory=list)
    turns: list[TurnRecord] = field(default_factory=list)
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)
    raw_requests: list[Any] = field(default_factory=list)
    raw_api_events: list[Any] = field(default_factory=list)
    raw_chunks: list[dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None
    provider: Optional[str] = None
    usage: dict[str, int] = field(default_factory=dict)
    safety_ratings: dict[str, Any] = field(default_factory=dict)
    state: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def history_size(self) -> int:
        return len(self.history)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exchange_id": self.exchange_id,
            "debug_id": self.debug_id,
            "system_prompt": self.system_prompt,
            "config": self.config,
            "preset_config": self.preset_config,
            "history": self.history,
            "history_size": self.history_size,
            "turns": [t.to_dict() for t in self.turns],
            "tool_executions": [t.to_dict() for t in self.tool_executions],
            "raw_requests": self.raw_requests,
            "raw_api_events": self.raw_api_events,
            "raw_chunks": self.raw_chunks,
            "model": self.model,
            "provider": self.provider,
            "usage": self.usage,
            "safety_ratings": self.safety_ratings,
            "state": self.state,
            "created_at": self.created_at.isoformat(),
        }
