"""Per-node provisioning lifecycle tracking."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from ..messaging import LIFECYCLE_TRANSITIONS, InMemoryBus, MessageEnvelope
from ..models import LifecycleEntry, LifecycleState
from ..scheduling import CancelScope, Scheduler, TimerHandle
from .base import BaseService

logger = logging.getLogger(__name__)

CREATING_PROGRESS = 10.0
STARTING_PROGRESS = 30.0
REGISTERING_PROGRESS = 60.0
TERMINAL_PROGRESS = 100.0


@dataclass
class LifecycleStateMachine(BaseService):
    """Owns the lifecycle entry map; all writes go through the methods below.

    Entries move forward only: Creating -> Starting -> Registering -> Active or
    Failed. Active entries are retired after ``active_retention_seconds`` so the
    authoritative node list takes over; Failed entries stay until dismissed.
    """

    scheduler: Scheduler
    scope: CancelScope
    bus: InMemoryBus | None = None
    _entries: Dict[str, LifecycleEntry] = field(default_factory=dict)
    _removals: Dict[str, TimerHandle] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def create(self, node_id: str, port: int) -> Optional[LifecycleEntry]:
        with self._lock:
            if node_id in self._entries:
                self.violate(f"lifecycle entry for {node_id} already exists")
                return None
            holder = self._holder_of_port(port)
            if holder is not None:
                self.violate(f"port {port} is already reserved by {holder}; allocate a fresh port")
                return None
            entry = LifecycleEntry(
                node_id=node_id,
                state=LifecycleState.CREATING,
                progress=CREATING_PROGRESS,
                port=port,
            )
            self._entries[node_id] = entry
        self._published(entry, previous=None)
        return entry

    def advance(self, node_id: str, new_state: LifecycleState, progress: float) -> bool:
        with self._lock:
            current = self._entries.get(node_id)
            if current is None:
                logger.debug("Ignoring advance for unknown node %s", node_id)
                return False
            if current.state.terminal:
                logger.info("Ignoring %s -> %s for %s: entry is terminal", current.state.value, new_state.value, node_id)
                return False
            if new_state.terminal:
                logger.warning("advance() cannot enter %s for %s; use mark_active/mark_failed", new_state.value, node_id)
                return False
            if new_state.rank < current.state.rank or progress < current.progress:
                logger.info(
                    "Rejecting backward transition for %s: %s/%.1f -> %s/%.1f",
                    node_id,
                    current.state.value,
                    current.progress,
                    new_state.value,
                    progress,
                )
                return False
            updated = replace(current, state=new_state, progress=min(float(progress), 99.0), updated_at=_now())
            self._entries[node_id] = updated
        self._published(updated, previous=current)
        return True

    def mark_active(self, node_id: str) -> bool:
        with self._lock:
            current = self._entries.get(node_id)
            if current is None or current.state.terminal:
                return False
            updated = replace(current, state=LifecycleState.ACTIVE, progress=TERMINAL_PROGRESS, error=None, updated_at=_now())
            self._entries[node_id] = updated
            retention = self.config.lifecycle.active_retention_seconds
            self._removals[node_id] = self.scheduler.call_later(
                retention,
                self._retire,
                node_id,
                scope=self.scope,
                label=f"retire:{node_id}",
            )
        self._published(updated, previous=current)
        return True

    def mark_failed(self, node_id: str, reason: str) -> bool:
        with self._lock:
            current = self._entries.get(node_id)
            if current is None or current.state.terminal:
                return False
            updated = replace(current, state=LifecycleState.FAILED, progress=TERMINAL_PROGRESS, error=reason, updated_at=_now())
            self._entries[node_id] = updated
        self._published(updated, previous=current)
        return True

    def dismiss(self, node_id: str) -> bool:
        """Acknowledge a Failed entry and drop it."""
        with self._lock:
            current = self._entries.get(node_id)
            if current is None:
                return False
            if current.state is not LifecycleState.FAILED:
                self.violate(f"only failed entries can be dismissed ({node_id} is {current.state.value})")
                return False
            del self._entries[node_id]
        self.emit_event("lifecycle_dismissed", node_id=node_id)
        return True

    def get(self, node_id: str) -> Optional[LifecycleEntry]:
        with self._lock:
            return self._entries.get(node_id)

    def snapshot(self) -> Dict[str, LifecycleEntry]:
        with self._lock:
            return dict(self._entries)

    def reserved_ports(self) -> Set[int]:
        """Ports held by any entry that is not Failed.

        Active entries keep their port until they are retired, so a node that
        is up but not yet in a successful node-list fetch is never double-booked.
        """
        with self._lock:
            return {entry.port for entry in self._entries.values() if entry.state is not LifecycleState.FAILED}

    def _holder_of_port(self, port: int) -> Optional[str]:
        for entry in self._entries.values():
            if entry.port == port and entry.state is not LifecycleState.FAILED:
                return entry.node_id
        return None

    def _retire(self, node_id: str) -> None:
        with self._lock:
            self._removals.pop(node_id, None)
            current = self._entries.get(node_id)
            if current is None or current.state is not LifecycleState.ACTIVE:
                return
            del self._entries[node_id]
        logger.debug("Retired lifecycle entry for %s", node_id)

    def _published(self, entry: LifecycleEntry, previous: Optional[LifecycleEntry]) -> None:
        self.emit_metric("lifecycle.progress", entry.progress, node_id=entry.node_id, state=entry.state.value)
        if self.bus is None:
            return
        self.bus.publish(
            MessageEnvelope(
                topic=LIFECYCLE_TRANSITIONS,
                payload={
                    "node_id": entry.node_id,
                    "state": entry.state.value,
                    "previous_state": previous.state.value if previous else None,
                    "progress": entry.progress,
                    "port": entry.port,
                    "error": entry.error,
                },
            )
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
