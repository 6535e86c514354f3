"""
Parley - Exchange lifecycle observers.

Observers are passed to the orchestrator and called synchronously at fixed
points of every exchange. They see everything but steer nothing: an
exception raised by an observer is logged and ignored.
"""

import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional

if TYPE_CHECKING:
    from .adapters.base import WireCapture
    from .models import ExchangeResult, NormalizedChunk

logger = logging.getLogger("parley.events")


class ExchangeObserver:
    """Base class for exchange observers. Every hook is a no-op."""

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
        """Called once before the first request of an exchange."""

    def chunk_received(self, exchange_id: str, turn: int, chunk: "NormalizedChunk") -> None:
        """Called for every chunk, in arrival order."""

    def turn_completed(self, exchange_id: str, turn: int, capture: "WireCapture") -> None:
        """Called after a turn's response has been fully consumed."""

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
        """Called after each dispatched tool call. ``result`` is ``None`` for unknown tools."""

    def exchange_completed(self, exchange_id: str, result: "ExchangeResult") -> None:
        """Called once with the final result (Done or MaxTurnsExceeded)."""

    def exchange_failed(self, exchange_id: str, error: BaseException) -> None:
        """Called when the exchange ends with an exception."""


class ObserverGroup:
    """Fans a notification out to several observers, isolating their failures."""

    def __init__(self, observers: Iterable[ExchangeObserver] = ()) -> None:
        self._observers = list(observers)

    def add(self, observer: ExchangeObserver) -> None:
        self._observers.append(observer)

    def __len__(self) -> int:
        return len(self._observers)

    def notify(self, hook: str, *args: Any, **kwargs: Any) -> None:
        for observer in self._observers:
            try:
                getattr(observer, hook)(*args, **kwargs)
            except Exception:
                logger.exception(
                    "Observer %s failed in %s", type(observer).__name__, hook
                )
