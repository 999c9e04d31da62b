"""Bounded in-process buffer of console metrics and events."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from .config import ObservabilityConfig
from .models import ObservabilityEvent

_LOGGER = logging.getLogger("storage_console.telemetry")


@dataclass
class TelemetryCollector:
    """Keeps the most recent ``metric_history`` samples and events.

    Older entries fall off the front; nothing is exported.
    """

    config: ObservabilityConfig
    metrics: Deque[Dict[str, object]] = field(init=False)
    events: Deque[ObservabilityEvent] = field(init=False)

    def __post_init__(self) -> None:
        self.metrics = deque(maxlen=self.config.metric_history)
        self.events = deque(maxlen=self.config.metric_history)

    def emit_metric(self, name: str, value: float, labels: Dict[str, str] | None = None) -> None:
        self.metrics.append(
            {
                "name": name,
                "value": value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **(labels or {}),
            }
        )

    def emit_event(self, message: str, attributes: Dict[str, object] | None = None, event_type: str = "console") -> None:
        self.events.append(ObservabilityEvent(event_type=event_type, message=message, attributes=attributes))

    def metric_values(self, name: str) -> List[float]:
        return [float(metric["value"]) for metric in self.metrics if metric.get("name") == name]

    def last_metric(self, name: str) -> Optional[Dict[str, object]]:
        return next((metric for metric in reversed(self.metrics) if metric.get("name") == name), None)

    def events_named(self, message: str) -> List[ObservabilityEvent]:
        return [event for event in self.events if event.message == message]

    def flush(self) -> int:
        dropped = len(self.metrics) + len(self.events)
        self.metrics.clear()
        self.events.clear()
        _LOGGER.debug("Dropped %d buffered telemetry entries", dropped)
        return dropped
