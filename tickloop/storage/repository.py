"""Persistence and telemetry interfaces used by the trading engine.

The engine never blocks on storage: it hands trade outcomes to an
``OutcomeRepository`` and state changes to an ``EventSink``; concrete
implementations decide how (and when) to write them.
"""
from collections import deque
from typing import Any, Deque, Dict, List, Protocol, Tuple, runtime_checkable

import structlog

from tickloop.core.models import TradeOutcome

logger = structlog.get_logger(__name__)


@runtime_checkable
class OutcomeRepository(Protocol):
    """Stores closed-trade outcomes for learning across restarts."""

    def save(self, outcome: TradeOutcome) -> None:
        ...

    def load_recent(self, n: int) -> List[TradeOutcome]:
        """The ``n`` most recent outcomes, oldest first."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Fire-and-forget receiver of engine events."""

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        ...


class InMemoryOutcomeRepository:
    """Bounded in-process outcome store."""

    def __init__(self, max_outcomes: int = 1000):
        self._outcomes: Deque[TradeOutcome] = deque(maxlen=max_outcomes)

    def save(self, outcome: TradeOutcome) -> None:
        self._outcomes.append(outcome)

    def load_recent(self, n: int) -> List[TradeOutcome]:
        if n <= 0:
            return []
        return list(self._outcomes)[-n:]

    def __len__(self) -> int:
        return len(self._outcomes)


class NullEventSink:
    """Discards all events."""

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        return None


class RecordingEventSink:
    """Keeps the most recent events in memory."""

    def __init__(self, max_events: int = 10000):
        self.events: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=max_events)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind == event_type]


class CompositeEventSink:
    """Fans events out to several sinks; a failing sink does not stop the others."""

    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event_type, payload)
            except Exception as e:
                logger.error(
                    "event_sink.publish_failed",
                    sink=type(sink).__name__,
                    event_type=event_type,
                    error=str(e),
                )
