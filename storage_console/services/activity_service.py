"""Operator-facing notice feed."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Deque, List, Optional

from ..messaging import LIFECYCLE_TRANSITIONS, UI_ACTIVITY, InMemoryBus, MessageEnvelope
from ..models import ActivityNotice
from ..telemetry import TelemetryCollector


@dataclass
class ActivityService:
    bus: InMemoryBus
    telemetry: TelemetryCollector
    notices: Deque[ActivityNotice] = field(default_factory=lambda: deque(maxlen=200))
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        history = self.telemetry.config.activity_history
        if self.notices.maxlen != history:
            self.notices = deque(self.notices, maxlen=history)
        self.bus.subscribe(LIFECYCLE_TRANSITIONS, self._handle_transition)
        self.bus.subscribe(UI_ACTIVITY, self._handle_event)

    def notify(self, message: str, level: str = "info") -> ActivityNotice:
        notice = ActivityNotice(message=message, level=level)
        with self._lock:
            self.notices.append(notice)
        self.telemetry.emit_event(f"notice_{level}", {"message": message}, event_type="notice")
        return notice

    def recent(self, limit: int = 20) -> List[ActivityNotice]:
        with self._lock:
            items = list(self.notices)
        if limit > 0:
            items = items[-limit:]
        return list(reversed(items))

    def latest(self, now: Optional[datetime] = None) -> Optional[ActivityNotice]:
        """Most recent notice still within its display window."""
        with self._lock:
            if not self.notices:
                return None
            notice = self.notices[-1]
        now = now or datetime.now(timezone.utc)
        ttl = timedelta(seconds=self.telemetry.config.notice_ttl_seconds)
        return notice if now - notice.created_at <= ttl else None

    def _handle_transition(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        state = payload.get("state")
        node_id = payload.get("node_id")
        if state == "registering" and payload.get("previous_state") != "registering":
            self.notify(f"Node {node_id} registering...", "success")
        elif state == "active":
            self.notify(f"Node {node_id} is active!", "success")
        elif state == "failed":
            self.notify(f"Node {node_id} failed to activate: {payload.get('error')}", "error")

    def _handle_event(self, envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        self.notify(str(payload.get("message", envelope.topic)), str(payload.get("level", "info")))
