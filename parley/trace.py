"""
Parley - Exchange tracing.

:class:`TraceAccumulator` is an :class:`~parley.events.ExchangeObserver`
that rebuilds a complete :class:`~parley.models.ExchangeTrace` for every
exchange: system prompt, configuration, starting history, per-turn text,
thinking, tool calls, usage and safety data, raw wire payloads and tool
executions. When an exchange that asked for diagnostics completes, the
trace is handed to a :class:`DebugSink` under the exchange's debug id.
Otherwise it is dropped without any I/O.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from .events import ExchangeObserver
from .models import (
    ExchangeResult,
    ExchangeTrace,
    NormalizedChunk,
    ToolExecutionRecord,
    TurnRecord,
)
from .text import preview

if TYPE_CHECKING:
    from .adapters.base import WireCapture

logger = logging.getLogger("parley.trace")

DEFAULT_PREVIEW_LENGTH = 100


class DebugSink(ABC):
    """Destination of finished debug traces. Best effort, fire and forget."""

    @abstractmethod
    def store(self, debug_id: str, metadata: dict[str, Any], trace: dict[str, Any]) -> None:
        """Persist *trace* under *debug_id*."""


class InMemoryDebugSink(DebugSink):
    """Keeps traces in memory for ``ttl`` seconds."""

    def __init__(self, ttl: Optional[float] = 3600.0) -> None:
        self.ttl = ttl
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, dict[str, Any], dict[str, Any]]] = {}

    def store(self, debug_id: str, metadata: dict[str, Any], trace: dict[str, Any]) -> None:
        with self._lock:
            self._purge()
            self._entries[debug_id] = (time.monotonic(), metadata, trace)

    def get(self, debug_id: str) -> Optional[dict[str, Any]]:
        """Return ``{"metadata": ..., "trace": ...}`` or ``None``."""
        with self._lock:
            self._purge()
            entry = self._entries.get(debug_id)
        if entry is None:
            return None
        return {"metadata": entry[1], "trace": entry[2]}

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._entries)

    def _purge(self) -> None:
        if self.ttl is None:
            return
        cutoff = time.monotonic() - self.ttl
        for key in [k for k, (stored, _, _) in self._entries.items() if stored < cutoff]:
            del self._entries[key]


class LoggingDebugSink(DebugSink):
    """Writes traces as JSON to a logger."""

    def __init__(self, logger_name: str = "parley.trace.sink", level: int = logging.DEBUG):
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def store(self, debug_id: str, metadata: dict[str, Any], trace: dict[str, Any]) -> None:
        self._logger.log(
            self._level,
            "Debug trace %s %s",
            debug_id,
            json.dumps({"metadata": metadata, "trace": trace}, ensure_ascii=False, default=str),
        )


class TraceAccumulator(ExchangeObserver):
    """Observer that accumulates one :class:`ExchangeTrace` per exchange.

    Traces are keyed by exchange id, so a single accumulator can observe
    concurrent exchanges.
    """

    def __init__(self, sink: DebugSink, preview_length: int = DEFAULT_PREVIEW_LENGTH) -> None:
        self.sink = sink
        self.preview_length = preview_length
        self._lock = threading.Lock()
        self._traces: dict[str, ExchangeTrace] = {}

    @property
    def pending(self) -> int:
        """Number of exchanges currently being traced."""
        with self._lock:
            return len(self._traces)

    def exchange_started(
        self,
        exchange_id: str,
        *,
        debug_id: Optional[str],
        debug: bool,
        system_prompt: Optional[str],
        config: dict[str, Any],
        preset_config: Optional[dict[str, Any]],
        history: list[dict[str, Any]],
    ) -> None:
        trace = ExchangeTrace(
            exchange_id=exchange_id,
            debug_id=debug_id,
            debug=debug,
            system_prompt=system_prompt,
            config=dict(config),
            preset_config=preset_config,
            history=list(history),
            provider=config.get("provider"),
            model=config.get("model"),
        )
        with self._lock:
            self._traces[exchange_id] = trace

    def chunk_received(self, exchange_id: str, turn: int, chunk: NormalizedChunk) -> None:
        trace = self._get(exchange_id)
        if trace is None:
            return
        record = self._turn(trace, turn)
        if chunk.text:
            record.text += chunk.text
        if chunk.thinking:
            record.thinking += chunk.thinking
        record.function_calls.extend(fc.to_dict() for fc in chunk.function_calls)
        if chunk.usage is not None and not chunk.usage.is_empty:
            record.usage = chunk.usage.to_dict()
        if chunk.safety_ratings:
            record.safety_ratings = dict(chunk.safety_ratings)
        if chunk.blocked:
            record.blocked = True
        trace.raw_chunks.append(chunk.to_dict())

    def turn_completed(self, exchange_id: str, turn: int, capture: "WireCapture") -> None:
        trace = self._get(exchange_id)
        if trace is None:
            return
        self._turn(trace, turn)
        trace.raw_requests.append(
            {
                "turn": turn,
                "url": capture.url,
                "request_params": capture.request_params,
                "body": capture.request_body,
            }
        )
        trace.raw_api_events.append(
            {"turn": turn, "events": list(capture.raw_events), "response": capture.raw_response}
        )
        trace.provider = capture.provider
        trace.model = capture.model

    def tool_executed(
        self,
        exchange_id: str,
        turn: int,
        *,
        tool_name: str,
        tool_call_id: str,
        arguments: dict[str, Any],
        result: Any,
    ) -> None:
        trace = self._get(exchange_id)
        if trace is None:
            return
        trace.tool_executions.append(
            ToolExecutionRecord(
                tool_name=tool_name,
                tool_call_id=tool_call_id,
                arguments=dict(arguments),
                result_preview=preview(result, self.preview_length),
                found=result is not None,
            )
        )

    def exchange_completed(self, exchange_id: str, result: ExchangeResult) -> None:
        with self._lock:
            trace = self._traces.pop(exchange_id, None)
        if trace is None or not trace.debug or result.debug_id is None:
            return

        trace.debug_id = result.debug_id
        trace.model = result.model
        trace.provider = result.provider or trace.provider
        trace.usage = result.usage.to_dict()
        trace.safety_ratings = dict(result.safety)
        trace.state = result.state.value

        metadata = {
            "model": trace.model,
            "provider": trace.provider,
            "token_usage": trace.usage,
            "safety_ratings": trace.safety_ratings,
            "thinking_enabled": bool(trace.config.get("thinking_enabled")),
            "state": trace.state,
            "cost": result.cost,
        }
        try:
            self.sink.store(result.debug_id, metadata, trace.to_dict())
        except Exception:
            logger.warning("Debug sink failed to store trace %s", result.debug_id, exc_info=True)

    def exchange_failed(self, exchange_id: str, error: BaseException) -> None:
        with self._lock:
            self._traces.pop(exchange_id, None)

    def _get(self, exchange_id: str) -> Optional[ExchangeTrace]:
        with self._lock:
            return self._traces.get(exchange_id)

    @staticmethod
    def _turn(trace: ExchangeTrace, turn: int) -> TurnRecord:
        if not trace.turns or trace.turns[-1].turn != turn:
            trace.turns.append(TurnRecord(turn=turn))
        return trace.turns[-1]
