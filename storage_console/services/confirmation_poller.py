"""Bounded polling that confirms a provisioned node reached the running set."""

from __future__ import annotations

import functools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ..models import LifecycleState, PollAttempt
from ..scheduling import CancelScope, Scheduler, TimerHandle
from .base import BaseService
from .lifecycle_service import REGISTERING_PROGRESS, LifecycleStateMachine

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "node did not register within the timeout window"
PROGRESS_STEP = 2.5
PROGRESS_CEILING = 99.0

CheckFn = Callable[[], bool]
SettledFn = Callable[[str, LifecycleState], None]


@dataclass
class PollHandle:
    node_id: str
    attempt: PollAttempt
    timer: TimerHandle
    check_fn: CheckFn
    on_settled: Optional[SettledFn] = None
    errors: int = 0
    in_flight: bool = False

    @property
    def running(self) -> bool:
        return not self.timer.done

    def cancel(self) -> None:
        self.timer.cancel()


@dataclass
class ConfirmationPoller(BaseService):
    """Runs one bounded confirmation loop per provisioned node.

    Every tick spends one attempt. The running-set check itself goes through
    ``Scheduler.run_io`` so a slow backend never holds up the timer thread; a
    tick that finds the previous check still outstanding spends its attempt
    without an answer. Time to Failed is therefore bounded by
    ``max_attempts * interval`` plus the duration of at most one check.
    """

    lifecycle: LifecycleStateMachine
    scheduler: Scheduler
    scope: CancelScope
    _polls: Dict[str, PollHandle] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock)

    def start(
        self,
        node_id: str,
        check_fn: CheckFn,
        *,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        on_settled: Optional[SettledFn] = None,
    ) -> Optional[PollHandle]:
        """Poll ``check_fn`` until it reports the node running or the budget runs out.

        ``check_fn`` returns whether the node is in the running set and raises
        when the running set could not be fetched. A raised error consumes the
        tick but is never reported as the failure reason.
        """
        with self._lock:
            existing = self._polls.get(node_id)
            if existing is not None and existing.running:
                self.violate(f"a confirmation poller is already running for {node_id}")
                return None
            policy = self.config.lifecycle
            attempt = PollAttempt(
                max_attempts=max_attempts or policy.max_attempts,
                interval=interval or policy.poll_interval_seconds,
            )
            self.lifecycle.advance(node_id, LifecycleState.REGISTERING, REGISTERING_PROGRESS)
            timer = self.scheduler.call_every(
                attempt.interval,
                self._tick,
                node_id,
                scope=self.scope,
                label=f"confirm:{node_id}",
            )
            handle = PollHandle(node_id=node_id, attempt=attempt, timer=timer, check_fn=check_fn, on_settled=on_settled)
            self._polls[node_id] = handle
        logger.info("Confirming %s: up to %d checks every %.1fs", node_id, attempt.max_attempts, attempt.interval)
        return handle

    def cancel(self, node_id: str) -> bool:
        with self._lock:
            handle = self._polls.pop(node_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            node_ids = list(self._polls)
        for node_id in node_ids:
            self.cancel(node_id)

    def is_polling(self, node_id: str) -> bool:
        with self._lock:
            handle = self._polls.get(node_id)
        return bool(handle and handle.running)

    def get(self, node_id: str) -> Optional[PollHandle]:
        with self._lock:
            return self._polls.get(node_id)

    def _tick(self, node_id: str) -> None:
        with self._lock:
            handle = self._polls.get(node_id)
            if handle is None or not handle.running:
                return
            attempt = handle.attempt
            attempt.attempt_count += 1
            number = attempt.attempt_count
            outstanding = handle.in_flight
            handle.in_flight = True
        self.emit_metric("poller.attempt", number, node_id=node_id)

        if outstanding:
            logger.warning("Running-set check for %s still outstanding at attempt %d", node_id, number)
            if attempt.exhausted:
                self._settle(handle, LifecycleState.FAILED)
            return
        self.scheduler.run_io(handle.check_fn, on_done=functools.partial(self._on_check, handle, number))

    def _on_check(self, handle: PollHandle, number: int, result: Any, error: Optional[BaseException]) -> None:
        with self._lock:
            handle.in_flight = False
            if self._polls.get(handle.node_id) is not handle or not handle.running:
                return
        exhausted = number >= handle.attempt.max_attempts
        if error is not None:  # transport errors only cost the tick
            handle.errors += 1
            logger.warning("Running-set check for %s failed on attempt %d: %s", handle.node_id, number, error)
            if exhausted:
                self._settle(handle, LifecycleState.FAILED)
            return

        if result:
            self._settle(handle, LifecycleState.ACTIVE)
        elif not exhausted:
            progress = min(REGISTERING_PROGRESS + number * PROGRESS_STEP, PROGRESS_CEILING)
            self.lifecycle.advance(handle.node_id, LifecycleState.REGISTERING, progress)
        else:
            self._settle(handle, LifecycleState.FAILED)

    def _settle(self, handle: PollHandle, outcome: LifecycleState) -> None:
        with self._lock:
            if self._polls.get(handle.node_id) is not handle:
                return
            handle.cancel()
            del self._polls[handle.node_id]
        if outcome is LifecycleState.ACTIVE:
            self.lifecycle.mark_active(handle.node_id)
            logger.info("Node %s active after %d checks", handle.node_id, handle.attempt.attempt_count)
        else:
            self.lifecycle.mark_failed(handle.node_id, TIMEOUT_MESSAGE)
            logger.warning(
                "Node %s did not register after %d checks (%d errored)",
                handle.node_id,
                handle.attempt.attempt_count,
                handle.errors,
            )
        if handle.on_settled is not None:
            handle.on_settled(handle.node_id, outcome)
