"""In-process fan-out of lifecycle, refresh and distribution events to listeners."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, Dict, Iterable, List, Optional

from .config import MessageBusConfig

_LOGGER = logging.getLogger("storage_console.messaging")

LIFECYCLE_TRANSITIONS = "lifecycle.transitions"
REFRESH_CYCLES = "refresh.cycles"
DISTRIBUTION_PRESENTED = "distribution.presented"
UI_ACTIVITY = "ui.activity"

Handler = Callable[["MessageEnvelope"], None]


@dataclass
class MessageEnvelope:
    topic: str
    payload: Dict[str, Any]


class InMemoryBus:
    """Synchronous pub/sub; handlers run on the publisher's thread, in subscription order.

    A handler that raises is logged and skipped so that one broken listener
    cannot abort the state change that produced the event.
    """

    def __init__(self, topics: Optional[Iterable[str]] = None) -> None:
        self._topics = set(topics) if topics is not None else None
        self._subscribers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self.delivery_failures = 0

    def _check_topic(self, topic: str) -> None:
        if self._topics is not None and topic not in self._topics:
            raise ValueError(f"Unknown topic {topic!r}")

    def publish(self, envelope: MessageEnvelope) -> None:
        self._check_topic(envelope.topic)
        for callback in list(self._subscribers[envelope.topic]):
            try:
                callback(envelope)
            except Exception:
                self.delivery_failures += 1
                _LOGGER.exception("Subscriber %r failed on %s", callback, envelope.topic)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._check_topic(topic)
        self._subscribers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> bool:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False


def build_bus(config: Optional[MessageBusConfig] = None) -> InMemoryBus:
    config = config or MessageBusConfig()
    if config.backend != "in-memory":
        raise NotImplementedError(f"Message bus backend {config.backend!r} is not available")
    return InMemoryBus(config.topics)
