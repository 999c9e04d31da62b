"""Timer primitives shared by the poller, the refresh loop and the distribution reveal.

Every timer is created through a :class:`Scheduler` and comes back as a
:class:`TimerHandle` that can be cancelled on its own or through the
:class:`CancelScope` that owns it. Two schedulers are provided:

* :class:`SimulatedScheduler` keeps a virtual clock and a heap of pending
  callbacks; time only moves when :meth:`SimulatedScheduler.advance` is called.
  Tests and offline tooling use it to get deterministic interleavings.
* :class:`AsyncioScheduler` maps onto ``loop.call_later`` for the live service
  and runs blocking collaborator calls in the loop's executor.

Timer callbacks and ``run_io`` completions run on the scheduler's own thread.
Commands arriving from worker threads go through the services' locks.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

IoCallback = Callable[[Any, Optional[BaseException]], None]


class TimerHandle:
    """Cancellation handle for a one-shot or repeating timer."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._cancelled = False
        self._finished = False
        self._inner: Any = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._cancelled or self._finished

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        inner, self._inner = self._inner, None
        if inner is not None:
            inner.cancel()

    def _bind(self, inner: Any) -> None:
        if self._cancelled:
            inner.cancel()
            return
        self._inner = inner

    def _finish(self) -> None:
        self._finished = True
        self._inner = None


class CancelScope:
    """Owns every timer started on behalf of one consumer (page, view, process)."""

    def __init__(self, name: str = "scope") -> None:
        self.name = name
        self._handles: List[TimerHandle] = []
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def track(self, handle: TimerHandle) -> TimerHandle:
        with self._lock:
            if not self._closed:
                self._handles = [item for item in self._handles if not item.done]
                self._handles.append(handle)
                return handle
        handle.cancel()
        return handle

    def active_count(self) -> int:
        return sum(1 for handle in self._handles if not handle.done)

    def cancel(self) -> None:
        with self._lock:
            self._closed = True
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()
        logger.debug("Cancel scope %s closed (%d timers)", self.name, len(handles))


class Scheduler:
    """Base scheduler; subclasses provide ``now`` and ``_call_later``."""

    @property
    def now(self) -> float:
        raise NotImplementedError

    def _call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        """Arm ``callback`` after ``delay`` seconds and return something with ``cancel()``."""
        raise NotImplementedError

    def run_io(self, fn: Callable[..., Any], *args: Any, on_done: IoCallback) -> None:
        """Run blocking ``fn(*args)`` and hand ``(result, error)`` to ``on_done`` on the scheduler's thread."""
        raise NotImplementedError

    def call_later(
        self,
        delay: float,
        callback: Callable[..., None],
        *args: Any,
        scope: Optional[CancelScope] = None,
        label: str = "",
    ) -> TimerHandle:
        if delay < 0:
            raise ValueError("Delay must be non-negative")
        handle = TimerHandle(label)

        def _fire() -> None:
            if handle.cancelled:
                return
            handle._finish()
            callback(*args)

        handle._bind(self._call_later(delay, _fire))
        if scope is not None:
            scope.track(handle)
        return handle

    def call_every(
        self,
        interval: float,
        callback: Callable[..., None],
        *args: Any,
        scope: Optional[CancelScope] = None,
        immediate: bool = False,
        label: str = "",
    ) -> TimerHandle:
        """Run ``callback`` on a fixed cadence until the returned handle is cancelled.

        The callback may cancel its own handle; no further tick is armed then.
        """
        if interval <= 0:
            raise ValueError("Interval must be positive")
        handle = TimerHandle(label)

        def _tick() -> None:
            if handle.cancelled:
                return
            callback(*args)
            if not handle.cancelled:
                handle._bind(self._call_later(interval, _tick))

        handle._bind(self._call_later(0.0 if immediate else interval, _tick))
        if scope is not None:
            scope.track(handle)
        return handle


@dataclass(order=True)
class _ScheduledCallback:
    scheduled_time: float
    order: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class SimulatedScheduler(Scheduler):
    """Virtual-clock scheduler with deterministic FIFO ordering for equal times."""

    def __init__(self, start_time: float = 0.0) -> None:
        self._clock = start_time
        self._queue: List[_ScheduledCallback] = []
        self._order_counter = itertools.count()

    @property
    def now(self) -> float:
        return self._clock

    @property
    def pending(self) -> int:
        return sum(1 for event in self._queue if not event.cancelled)

    def _call_later(self, delay: float, callback: Callable[[], None]) -> _ScheduledCallback:
        event = _ScheduledCallback(
            scheduled_time=self._clock + delay,
            order=next(self._order_counter),
            callback=callback,
        )
        heapq.heappush(self._queue, event)
        return event

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due on the way."""
        if seconds < 0:
            raise ValueError("Cannot move the clock backwards")
        return self._run(until=self._clock + seconds)

    def run_until_idle(self, max_events: int = 100_000) -> int:
        return self._run(until=None, max_events=max_events)

    def _run(self, until: Optional[float], max_events: Optional[int] = None) -> int:
        processed = 0
        while self._queue:
            event = self._queue[0]
            if until is not None and event.scheduled_time > until + 1e-9:
                break
            heapq.heappop(self._queue)
            if event.cancelled:
                continue
            self._clock = max(self._clock, event.scheduled_time)
            event.callback()
            processed += 1
            if max_events is not None and processed >= max_events:
                break
        if until is not None:
            self._clock = max(self._clock, until)
        return processed

    def pending_times(self) -> Tuple[float, ...]:
        return tuple(sorted(event.scheduled_time for event in self._queue if not event.cancelled))

    def run_io(self, fn: Callable[..., Any], *args: Any, on_done: IoCallback) -> None:
        # Inline: collaborator calls take no virtual time.
        try:
            result = fn(*args)
        except Exception as exc:
            on_done(None, exc)
            return
        on_done(result, None)


class _LoopTimer:
    """``loop.call_later`` armed from a thread that does not own the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._handle: Optional[asyncio.TimerHandle] = None
        self._cancelled = False

    def arm(self, delay: float, callback: Callable[[], None]) -> None:
        if not self._cancelled:
            self._handle = self._loop.call_later(delay, callback)

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._handle.cancel)


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop.

    Timers may be armed from worker threads (FastAPI runs blocking handlers
    there); callbacks always run on the loop thread. ``run_io`` sends blocking
    collaborator calls to the loop's default executor and delivers the outcome
    back on the loop, so a slow backend never stalls other timers.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def now(self) -> float:
        return self.loop.time()

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self.loop
        except RuntimeError:
            return False

    def _call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        if self._on_loop_thread():
            return self.loop.call_later(delay, callback)
        timer = _LoopTimer(self.loop)
        self.loop.call_soon_threadsafe(timer.arm, delay, callback)
        return timer

    def run_io(self, fn: Callable[..., Any], *args: Any, on_done: IoCallback) -> None:
        loop = self.loop

        def _deliver(future: asyncio.Future) -> None:
            if future.cancelled():
                return
            error = future.exception()
            on_done(None if error else future.result(), error)

        def _submit() -> None:
            loop.run_in_executor(None, fn, *args).add_done_callback(_deliver)

        if self._on_loop_thread():
            _submit()
        else:
            loop.call_soon_threadsafe(_submit)
