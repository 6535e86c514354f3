"""
Parley - History sinks.

The orchestrator never persists anything. When an exchange finishes it
hands the full updated history to a :class:`HistorySink`, which the
integrating application implements on top of its own storage.
"""

import threading
from abc import ABC, abstractmethod

from .models import CanonicalMessage


class HistorySink(ABC):
    """Receives the complete history of each finished exchange."""

    @abstractmethod
    def append(self, messages: list[CanonicalMessage]) -> None:
        """Store *messages*, the full history after the exchange."""


class InMemoryHistorySink(HistorySink):
    """Keeps every handed-over history in memory. Useful for tests and the CLI."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.batches: list[list[CanonicalMessage]] = []

    def append(self, messages: list[CanonicalMessage]) -> None:
        with self._lock:
            self.batches.append(list(messages))

    @property
    def latest(self) -> list[CanonicalMessage]:
        with self._lock:
            return list(self.batches[-1]) if self.batches else []
