"""Periodic re-sync of the externally owned collections."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional, Set, Tuple

from ..messaging import REFRESH_CYCLES, InMemoryBus, MessageEnvelope
from ..models import FileRecord, NetworkStatus, NodeRecord
from ..scheduling import CancelScope, Scheduler, TimerHandle
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class SourceState:
    value: Any
    last_updated: Optional[datetime] = None
    last_error: Optional[str] = None
    failures: int = 0


@dataclass(frozen=True)
class CollectionsSnapshot:
    nodes: Tuple[NodeRecord, ...]
    running: FrozenSet[str]
    files: Tuple[FileRecord, ...]
    status: Optional[NetworkStatus]
    last_updated: Dict[str, Optional[datetime]]
    last_errors: Dict[str, Optional[str]]

    def node(self, node_id: str) -> Optional[NodeRecord]:
        return next((node for node in self.nodes if node.node_id == node_id), None)


class CachedCollections:
    """Last-fetch-wins cache of the four authoritative collections."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sources: Dict[str, SourceState] = {
            "nodes": SourceState(value=()),
            "running": SourceState(value=frozenset()),
            "files": SourceState(value=()),
            "status": SourceState(value=None),
        }

    def replace(self, source: str, value: Any) -> None:
        with self._lock:
            state = self._sources[source]
            state.value = _freeze(source, value)
            state.last_updated = datetime.now(timezone.utc)
            state.last_error = None

    def record_failure(self, source: str, exc: BaseException) -> None:
        with self._lock:
            state = self._sources[source]
            state.last_error = str(exc) or exc.__class__.__name__
            state.failures += 1

    def value(self, source: str) -> Any:
        with self._lock:
            return self._sources[source].value

    def failures(self, source: str) -> int:
        with self._lock:
            return self._sources[source].failures

    def known_ports(self) -> Set[int]:
        with self._lock:
            return {node.port for node in self._sources["nodes"].value if node.port is not None}

    def snapshot(self) -> CollectionsSnapshot:
        with self._lock:
            running = self._sources["running"].value
            nodes = tuple(replace(node, running=node.node_id in running) for node in self._sources["nodes"].value)
            return CollectionsSnapshot(
                nodes=nodes,
                running=running,
                files=self._sources["files"].value,
                status=self._sources["status"].value,
                last_updated={name: state.last_updated for name, state in self._sources.items()},
                last_errors={name: state.last_error for name, state in self._sources.items()},
            )


def _freeze(source: str, value: Any) -> Any:
    if source == "running":
        return frozenset(value or ())
    if source in ("nodes", "files"):
        return tuple(value or ())
    return value


@dataclass
class RefreshScheduler(BaseService):
    """Re-fetches every source on a fixed cadence, independent of lifecycle activity.

    Sources are fetched one by one so that an unreachable source keeps its
    previous cached value while the others still update. There is no retry
    beyond the next scheduled cycle.

    Timer ticks and :meth:`request_refresh` run the cycle through
    ``Scheduler.run_io``; at most one such cycle is outstanding. A tick that
    lands while one is outstanding is skipped, an explicit request is queued
    behind it.
    """

    store: CachedCollections
    fetchers: Dict[str, Callable[[], Any]]
    scheduler: Scheduler
    scope: CancelScope
    bus: InMemoryBus | None = None
    cycles: int = 0
    _timer: Optional[TimerHandle] = None
    _in_flight: bool = False
    _follow_up: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if self.running:
            self.violate("refresh scheduler already started")
            return
        interval = self.config.refresh.interval_seconds
        self._timer = self.scheduler.call_every(
            interval,
            self.request_refresh,
            False,
            scope=self.scope,
            immediate=True,
            label="refresh",
        )
        logger.info("Refreshing %s every %.1fs", ", ".join(self.fetchers), interval)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def request_refresh(self, follow_up: bool = True) -> bool:
        """Start a cycle without blocking the caller.

        Returns False when a cycle is already outstanding. With ``follow_up``
        one more cycle runs as soon as that one completes.
        """
        with self._lock:
            if self._in_flight:
                self._follow_up = self._follow_up or follow_up
                logger.debug("Refresh cycle outstanding; %s", "queued" if follow_up else "skipped")
                return False
            self._in_flight = True
        self.scheduler.run_io(self.refresh_now, on_done=self._cycle_done)
        return True

    def refresh_now(self) -> Dict[str, bool]:
        """Fetch every source on the calling thread and return per-source success."""
        started = time.perf_counter()
        results: Dict[str, bool] = {}
        for source, fetch in self.fetchers.items():
            try:
                value = fetch()
            except Exception as exc:  # keep the previous value until this source recovers
                logger.warning("Refresh of %s failed: %s", source, exc)
                self.store.record_failure(source, exc)
                self.emit_metric("refresh.failures", 1, source=source)
                results[source] = False
                continue
            self.store.replace(source, value)
            results[source] = True
        with self._lock:
            self.cycles += 1
            cycle = self.cycles
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self.emit_metric("refresh.duration_ms", elapsed_ms)
        if self.bus:
            self.bus.publish(MessageEnvelope(topic=REFRESH_CYCLES, payload={"cycle": cycle, "results": results}))
        return results

    def _cycle_done(self, results: Optional[Dict[str, bool]], error: Optional[BaseException]) -> None:
        if error is not None:
            logger.error("Refresh cycle aborted: %s", error)
        with self._lock:
            again, self._follow_up = self._follow_up, False
            self._in_flight = again
        if again:
            self.scheduler.run_io(self.refresh_now, on_done=self._cycle_done)
