"""
Parley - Conversation orchestrator.

Drives one chat exchange through a bounded loop of model turns:

    Idle -> Requesting -> Processing -> (ToolExecuting -> Requesting)* -> Done
                                                                        | MaxTurnsExceeded

Each turn sends the canonical history to the active provider adapter and
consumes the returned chunks in order. Tool calls collected during a turn
are dispatched through the :class:`~parley.tools.ToolRegistry` and their
results appended to the history before the next turn starts. A turn
without tool calls ends the exchange.

Usage::

    orchestrator = ChatOrchestrator(registry, tools, config_provider)
    result = orchestrator.ask("What's the weather in Paris?", on_token=print)
    print(result.answer)
"""

import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from .adapters.base import BaseProviderAdapter, WireCapture
from .config import ConfigProvider, ExchangeConfig
from .events import ExchangeObserver, ObserverGroup
from .history import HistorySink
from .models import (
    CanonicalMessage,
    ExchangeResult,
    ExchangeState,
    FunctionCall,
    NormalizedChunk,
    ToolCallRequest,
    Usage,
    tool_call_id,
)
from .registry import ProviderRegistry
from .text import sanitize_utf8
from .tools import ToolDef, ToolRegistry

logger = logging.getLogger("parley.orchestrator")

MAX_TURNS = 5
MAX_TURNS_MESSAGE = (
    "Sorry, I could not complete your request within the allowed number of steps."
)
BLOCKED_NOTICE = "⚠️ The response was blocked by the provider's safety filters ({reason})."

STATUS_ANALYSING = "Analysing the request..."
STATUS_THINKING = "Thinking further..."
STATUS_TOOL = "Running tool: {name}..."
STEP_THINKING = "thinking"
STEP_TOOL = "tool:{name}"

StatusCallback = Callable[[str, str], None]
TokenCallback = Callable[[str], None]


@dataclass
class ExchangeOptions:
    """Per-call options for :meth:`ChatOrchestrator.ask`.

    Attributes:
        reset: Start from an empty history. With an empty message the call
            is a no-op.
        debug: Force diagnostics on (``True``) or off (``False``). ``None``
            follows the configured ``debug_mode``.
        tools_override: Tools for this exchange only, as registered names or
            :class:`ToolDef` objects. An empty list disables tools.
        preset_override: Generation settings applied on top of the
            configuration for this exchange only.
        history: Prior conversation, owned by the caller and never mutated.
        stateless: Do not hand the resulting history to the history sink.
        system_prompt: Replaces the orchestrator's system prompt.
    """

    reset: bool = False
    debug: Optional[bool] = None
    tools_override: Optional[list[Union[str, ToolDef]]] = None
    preset_override: Optional[dict[str, Any]] = None
    history: list[CanonicalMessage] = field(default_factory=list)
    stateless: bool = False
    system_prompt: Optional[str] = None


@dataclass
class _TurnOutput:
    text: str = ""
    thinking: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    blocked: bool = False


class ChatOrchestrator:
    """Bounded multi-turn conversation loop over a provider registry and tools.

    The registries are shared and read-only; every :meth:`ask` call owns its
    own history, accumulators and trace, so one orchestrator can serve
    concurrent exchanges.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        tools: Optional[ToolRegistry],
        config_provider: ConfigProvider,
        observers: Iterable[ExchangeObserver] = (),
        history_sink: Optional[HistorySink] = None,
        system_prompt: Optional[str] = None,
        max_turns: int = MAX_TURNS,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.registry = registry
        self.tools = tools or ToolRegistry()
        self.config_provider = config_provider
        self.observers = ObserverGroup(observers)
        self.history_sink = history_sink
        self.system_prompt = system_prompt
        self.max_turns = max_turns

    def ask(
        self,
        message: str,
        options: Optional[ExchangeOptions] = None,
        on_status_update: Optional[StatusCallback] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> ExchangeResult:
        """Run one exchange and return its result.

        Args:
            message: The user's message. An empty message adds no user turn
                and continues from ``options.history``.
            options: Per-call options.
            on_status_update: Called with ``(message, step)`` as the exchange
                progresses; ``step`` is ``"thinking"`` or ``"tool:<name>"``.
            on_token: Called with each text fragment as it arrives.

        Returns:
            The exchange result. Content-safety blocks and an exhausted turn
            budget are reported in the result, not raised.

        Raises:
            ProviderError: The provider call failed.
            ProviderNotAvailableError: No adapter can serve the exchange.
            Exception: Whatever a tool raised.
        """
        options = options or ExchangeOptions()
        if options.reset and not message.strip():
            return ExchangeResult(answer="", debug_id=None, state=ExchangeState.IDLE)

        config = ExchangeConfig.from_provider(self.config_provider)
        config = config.with_overrides(options.preset_override)
        adapter = self.registry.get_adapter(config.provider)
        if adapter.provider_name != config.provider:
            config = config.with_credentials(
                adapter.provider_name,
                self.config_provider.get_credentials(adapter.provider_name),
            )

        debug = options.debug if options.debug is not None else config.debug_mode
        debug_id = f"dbg_{uuid.uuid4().hex}" if debug else None
        exchange_id = uuid.uuid4().hex
        system_prompt = options.system_prompt or self.system_prompt
        tools = self._tools_for(options)

        history = [] if options.reset else list(options.history)
        if message:
            history.append(CanonicalMessage.user(sanitize_utf8(message)))

        logger.debug(
            "Exchange %s started (provider=%s, model=%s, debug=%s)",
            exchange_id,
            adapter.provider_name,
            config.model,
            debug,
        )
        self.observers.notify(
            "exchange_started",
            exchange_id,
            debug_id=debug_id,
            debug=debug,
            system_prompt=system_prompt,
            config=config.to_dict(),
            preset_config=options.preset_override,
            history=[m.to_dict() for m in history],
        )

        try:
            result = self._run(
                exchange_id,
                adapter,
                config,
                history,
                tools,
                system_prompt,
                on_status_update,
                on_token,
            )
            result.debug_id = debug_id
            result.cost = adapter.capabilities.get_capabilities(
                config.model or adapter.default_model
            ).estimate_cost(result.usage)
            if self.history_sink is not None and not options.stateless:
                self.history_sink.append(list(history))
        except Exception as e:
            logger.debug("Exchange %s failed: %s", exchange_id, e)
            self.observers.notify("exchange_failed", exchange_id, e)
            raise

        self.observers.notify("exchange_completed", exchange_id, result)
        logger.debug(
            "Exchange %s finished in state %s after %d turn(s)",
            exchange_id,
            result.state.value,
            result.turns,
        )
        return result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(
        self,
        exchange_id: str,
        adapter: BaseProviderAdapter,
        config: ExchangeConfig,
        history: list[CanonicalMessage],
        tools: ToolRegistry,
        system_prompt: Optional[str],
        on_status_update: Optional[StatusCallback],
        on_token: Optional[TokenCallback],
    ) -> ExchangeResult:
        answer: list[str] = []
        thinking: list[str] = []
        usage = Usage()
        safety: dict[str, Any] = {}
        model = config.model or adapter.default_model
        used_ids = {tc.id for m in history for tc in m.tool_calls}
        id_sequence = itertools.count()

        self._status(on_status_update, STATUS_ANALYSING, STEP_THINKING)

        for turn in range(self.max_turns):
            if turn > 0:
                self._status(on_status_update, STATUS_THINKING, STEP_THINKING)

            chunks, capture = self._request(adapter, config, history, tools, system_prompt)
            output = self._consume(exchange_id, turn, chunks, on_token, safety)
            self.observers.notify("turn_completed", exchange_id, turn, capture)
            model = capture.model or model

            if output.text:
                answer.append(output.text)
            if output.thinking:
                thinking.append(output.thinking)
            if output.usage is not None:
                usage = _add_usage(usage, output.usage)

            if not output.function_calls:
                if output.text:
                    history.append(CanonicalMessage.assistant(output.text))
                return ExchangeResult(
                    answer="".join(answer),
                    thinking="".join(thinking),
                    usage=usage,
                    safety=safety,
                    model=model or config.provider or "unknown",
                    provider=adapter.provider_name,
                    state=ExchangeState.DONE,
                    history=history,
                    turns=turn + 1,
                )

            requests = [
                ToolCallRequest(
                    id=_unique_id(call, used_ids, id_sequence),
                    name=call.name,
                    arguments=json.dumps(call.args, ensure_ascii=False),
                )
                for call in output.function_calls
            ]
            history.append(CanonicalMessage.assistant(output.text or None, requests))
            self._dispatch(exchange_id, turn, requests, tools, history, on_status_update)

        logger.warning(
            "Exchange %s stopped after %d tool turns without a final answer",
            exchange_id,
            self.max_turns,
        )
        return ExchangeResult(
            answer=MAX_TURNS_MESSAGE,
            thinking="".join(thinking),
            usage=usage,
            safety=safety,
            model=model or config.provider or "unknown",
            provider=adapter.provider_name,
            state=ExchangeState.MAX_TURNS_EXCEEDED,
            history=history,
            turns=self.max_turns,
        )

    def _request(
        self,
        adapter: BaseProviderAdapter,
        config: ExchangeConfig,
        history: list[CanonicalMessage],
        tools: ToolRegistry,
        system_prompt: Optional[str],
    ) -> tuple[Iterable[NormalizedChunk], WireCapture]:
        definitions = tools.definitions()
        model = config.model or adapter.default_model
        streaming = (
            config.streaming_enabled and adapter.capabilities.get_capabilities(model).streaming
        )
        if streaming:
            return adapter.stream_generate_content(
                history, definitions, model, system_instruction=system_prompt, config=config
            )
        chunk, capture = adapter.generate_content(
            history, definitions, model, system_instruction=system_prompt, config=config
        )
        return [chunk], capture

    def _consume(
        self,
        exchange_id: str,
        turn: int,
        chunks: Iterable[NormalizedChunk],
        on_token: Optional[TokenCallback],
        safety: dict[str, Any],
    ) -> _TurnOutput:
        """Accumulate one turn's chunks in arrival order.

        Usage and safety ratings are last-writer-wins within the turn. Once a
        chunk is blocked, tool calls of the turn are discarded.
        """
        output = _TurnOutput()
        text: list[str] = []
        thinking: list[str] = []

        for chunk in chunks:
            self.observers.notify("chunk_received", exchange_id, turn, chunk)
            if chunk.text:
                text.append(chunk.text)
                self._token(on_token, chunk.text)
            if chunk.thinking:
                thinking.append(chunk.thinking)
            if chunk.usage is not None and not chunk.usage.is_empty:
                output.usage = chunk.usage
            if chunk.safety_ratings:
                safety.clear()
                safety.update(chunk.safety_ratings)
            if chunk.blocked and not output.blocked:
                output.blocked = True
                notice = BLOCKED_NOTICE.format(reason=chunk.blocked_reason or "unknown")
                if text:
                    notice = "\n\n" + notice
                text.append(notice)
                self._token(on_token, notice)
                logger.info(
                    "Turn %d of exchange %s was blocked: %s",
                    turn,
                    exchange_id,
                    chunk.blocked_reason,
                )
            if chunk.function_calls and not output.blocked:
                output.function_calls.extend(chunk.function_calls)

        if output.blocked:
            output.function_calls = []
        output.text = sanitize_utf8("".join(text))
        output.thinking = "".join(thinking)
        return output

    def _dispatch(
        self,
        exchange_id: str,
        turn: int,
        requests: list[ToolCallRequest],
        tools: ToolRegistry,
        history: list[CanonicalMessage],
        on_status_update: Optional[StatusCallback],
    ) -> None:
        for request in requests:
            self._status(
                on_status_update,
                STATUS_TOOL.format(name=request.name),
                STEP_TOOL.format(name=request.name),
            )
            arguments = request.parsed_arguments()
            result = tools.resolve(request.name, arguments)
            content = None if result is None else _transport(result)
            self.observers.notify(
                "tool_executed",
                exchange_id,
                turn,
                tool_name=request.name,
                tool_call_id=request.id,
                arguments=arguments,
                result=content,
            )
            if content is None:
                continue
            history.append(CanonicalMessage.tool(request.id, content))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tools_for(self, options: ExchangeOptions) -> ToolRegistry:
        if options.tools_override is None:
            return self.tools
        names = [t for t in options.tools_override if isinstance(t, str)]
        registry = self.tools.subset(names)
        for tool in options.tools_override:
            if isinstance(tool, ToolDef) and tool.name not in registry:
                registry.register(tool)
        return registry

    @staticmethod
    def _status(callback: Optional[StatusCallback], message: str, step: str) -> None:
        if callback is None:
            return
        try:
            callback(message, step)
        except Exception:
            logger.debug("on_status_update callback failed", exc_info=True)

    @staticmethod
    def _token(callback: Optional[TokenCallback], text: str) -> None:
        if callback is None:
            return
        try:
            callback(text)
        except Exception:
            logger.debug("on_token callback failed", exc_info=True)


def _unique_id(call: FunctionCall, used: set[str], sequence: Iterator[int]) -> str:
    call_id = call.id
    while not call_id or call_id in used:
        call_id = tool_call_id(call.name, next(sequence))
    used.add(call_id)
    return call_id


def _transport(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def _add_usage(total: Usage, turn: Usage) -> Usage:
    return Usage(
        prompt_tokens=total.prompt_tokens + turn.prompt_tokens,
        completion_tokens=total.completion_tokens + turn.completion_tokens,
        thinking_tokens=total.thinking_tokens + turn.thinking_tokens,
        total_tokens=total.total_tokens + turn.total_tokens,
    )
