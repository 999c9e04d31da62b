"""Incremental reveal of a file's chunk-to-node assignments."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..messaging import DISTRIBUTION_PRESENTED, InMemoryBus, MessageEnvelope
from ..models import Distribution, DistributionProgress, NodeProgress
from ..scheduling import CancelScope, Scheduler, TimerHandle
from .base import BaseService

logger = logging.getLogger(__name__)


def replication_factor(total_chunks: int, node_count: int) -> float:
    """Chunks per distinct node, for display only."""
    if node_count <= 0:
        return 0.0
    return round(total_chunks / node_count, 1)


@dataclass
class _Presentation:
    distribution: Distribution
    groups: Dict[str, List[int]]
    confirmed: Set[int] = field(default_factory=set)
    timers: List[TimerHandle] = field(default_factory=list)

    def cancel(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers.clear()


@dataclass
class ChunkDistributionTracker(BaseService):
    """Presents one distribution at a time.

    Position ``i`` of the received assignment list is confirmed at
    ``(i + 1) * reveal_interval`` seconds; the whole presentation disappears
    ``len * reveal_interval + linger`` seconds after it started.
    """

    scheduler: Scheduler
    scope: CancelScope
    bus: InMemoryBus | None = None
    _current: Optional[_Presentation] = None
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def is_presenting(self) -> bool:
        return self._current is not None

    def present(self, distribution: Distribution) -> bool:
        with self._lock:
            return self._present(distribution)

    def _present(self, distribution: Distribution) -> bool:
        self.cancel()
        if not distribution.assignments:
            logger.info("Nothing to present for %s: empty distribution", distribution.file_id)
            return False

        groups: Dict[str, List[int]] = {}
        for position, assignment in enumerate(distribution.assignments):
            groups.setdefault(assignment.node_id, []).append(position)
        presentation = _Presentation(distribution=distribution, groups=groups)

        policy = self.config.distribution
        step = policy.reveal_interval_seconds
        for position in range(len(distribution)):
            presentation.timers.append(
                self.scheduler.call_later(
                    (position + 1) * step,
                    self._confirm,
                    presentation,
                    position,
                    scope=self.scope,
                    label=f"reveal:{distribution.file_id}:{position}",
                )
            )
        presentation.timers.append(
            self.scheduler.call_later(
                len(distribution) * step + policy.linger_seconds,
                self._expire,
                presentation,
                scope=self.scope,
                label=f"expire:{distribution.file_id}",
            )
        )
        self._current = presentation

        self.emit_event(
            "distribution_presented",
            file_id=distribution.file_id,
            chunks=len(distribution),
            nodes=len(groups),
        )
        if self.bus:
            self.bus.publish(
                MessageEnvelope(
                    topic=DISTRIBUTION_PRESENTED,
                    payload={
                        "file_id": distribution.file_id,
                        "file_name": distribution.file_name,
                        "total_chunks": len(distribution),
                        "node_count": len(groups),
                    },
                )
            )
        return True

    def cancel(self) -> None:
        with self._lock:
            if self._current is not None:
                self._current.cancel()
                self._current = None

    def progress(self) -> Optional[DistributionProgress]:
        with self._lock:
            current = self._current
            if current is None:
                return None
            confirmed = set(current.confirmed)
        assignments = current.distribution.assignments
        nodes = tuple(
            NodeProgress(
                node_id=node_id,
                chunk_indices=tuple(assignments[position].chunk_index for position in positions),
                confirmed_count=sum(1 for position in positions if position in confirmed),
            )
            for node_id, positions in current.groups.items()
        )
        return DistributionProgress(
            file_id=current.distribution.file_id,
            file_name=current.distribution.file_name,
            total_chunks=len(assignments),
            confirmed=frozenset(assignments[position].chunk_index for position in confirmed),
            nodes=nodes,
            replication_factor=replication_factor(len(assignments), len(current.groups)),
        )

    def _confirm(self, presentation: _Presentation, position: int) -> None:
        with self._lock:
            if presentation is self._current:
                presentation.confirmed.add(position)

    def _expire(self, presentation: _Presentation) -> None:
        with self._lock:
            if presentation is not self._current:
                return
            self._current = None
        logger.debug("Distribution presentation for %s expired", presentation.distribution.file_id)
