from __future__ import annotations

import pytest

from storage_console.models import LifecycleState
from storage_console.services.base import PreconditionViolation
from storage_console.services.confirmation_poller import TIMEOUT_MESSAGE


def _scripted(*answers):
    calls = []
    queue = list(answers)

    def check():
        calls.append(len(calls) + 1)
        answer = queue.pop(0) if queue else False
        if isinstance(answer, Exception):
            raise answer
        return answer

    return check, calls


def _observe(runtime):
    seen = []
    runtime.bus.subscribe(
        "lifecycle.transitions",
        lambda envelope: seen.append((envelope.payload["state"], envelope.payload["progress"])),
    )
    return seen


def test_end_to_end_confirmation_sequence(runtime, scheduler):
    seen = _observe(runtime)
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted(False, False, True)

    runtime.poller.start("node1", check)
    assert runtime.lifecycle.get("node1").state is LifecycleState.REGISTERING
    assert runtime.lifecycle.get("node1").progress == 60

    scheduler.advance(1.0)
    assert runtime.lifecycle.get("node1").progress == 62.5
    scheduler.advance(1.0)
    assert runtime.lifecycle.get("node1").progress == 65
    scheduler.advance(1.0)
    entry = runtime.lifecycle.get("node1")
    assert (entry.state, entry.progress) == (LifecycleState.ACTIVE, 100)
    assert not runtime.poller.is_polling("node1")

    assert seen == [
        ("creating", 10),
        ("registering", 60),
        ("registering", 62.5),
        ("registering", 65),
        ("active", 100),
    ]

    scheduler.advance(2.9)
    assert runtime.lifecycle.get("node1") is not None
    scheduler.advance(0.1)
    assert runtime.lifecycle.get("node1") is None
    assert len(calls) == 3


def test_fails_after_exactly_fifteen_negative_checks(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted()
    runtime.poller.start("node1", check)

    scheduler.advance(14.0)
    assert len(calls) == 14
    assert runtime.lifecycle.get("node1").state is LifecycleState.REGISTERING

    scheduler.advance(1.0)
    entry = runtime.lifecycle.get("node1")
    assert len(calls) == 15
    assert entry.state is LifecycleState.FAILED
    assert entry.progress == 100
    assert entry.error == TIMEOUT_MESSAGE

    scheduler.advance(60.0)
    assert len(calls) == 15
    assert runtime.lifecycle.get("node1").state is LifecycleState.FAILED


def test_progress_is_capped_below_completion(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, _ = _scripted()
    runtime.poller.start("node1", check, max_attempts=30)
    progress = []
    for _ in range(20):
        scheduler.advance(1.0)
        progress.append(runtime.lifecycle.get("node1").progress)
    assert progress == sorted(progress)
    assert max(progress) == 99
    assert progress[15] == 99


def test_check_errors_consume_the_tick_without_failing(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted(ConnectionError("backend down"), False, True)
    runtime.poller.start("node1", check)

    scheduler.advance(1.0)
    entry = runtime.lifecycle.get("node1")
    assert entry.state is LifecycleState.REGISTERING
    assert entry.progress == 60
    assert runtime.poller.get("node1").errors == 1

    scheduler.advance(1.0)
    assert runtime.lifecycle.get("node1").progress == 65

    scheduler.advance(1.0)
    assert runtime.lifecycle.get("node1").state is LifecycleState.ACTIVE
    assert len(calls) == 3


def test_persistent_errors_still_end_in_timeout(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted(*[TimeoutError("slow")] * 20)
    runtime.poller.start("node1", check)
    scheduler.advance(30.0)
    entry = runtime.lifecycle.get("node1")
    assert entry.state is LifecycleState.FAILED
    assert entry.error == TIMEOUT_MESSAGE
    assert len(calls) == 15


def test_second_poller_for_same_node_is_rejected(runtime, dev_runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    first_check, first_calls = _scripted()
    second_check, second_calls = _scripted()
    assert runtime.poller.start("node1", first_check) is not None
    assert runtime.poller.start("node1", second_check) is None
    scheduler.advance(2.0)
    assert len(first_calls) == 2
    assert second_calls == []

    dev_runtime.lifecycle.create("node9", 50059)
    dev_runtime.poller.start("node9", first_check)
    with pytest.raises(PreconditionViolation):
        dev_runtime.poller.start("node9", second_check)


def test_cancelled_poller_stops_mutating_the_entry(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted(False, False, True)
    runtime.poller.start("node1", check)
    scheduler.advance(1.0)

    assert runtime.poller.cancel("node1")
    scheduler.advance(10.0)
    entry = runtime.lifecycle.get("node1")
    assert (entry.state, entry.progress) == (LifecycleState.REGISTERING, 62.5)
    assert len(calls) == 1
    assert not runtime.poller.cancel("node1")


def test_runtime_teardown_cancels_pollers(runtime, scheduler):
    runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted()
    runtime.poller.start("node1", check)
    scheduler.advance(2.0)
    runtime.shutdown()
    scheduler.advance(30.0)
    assert len(calls) == 2
    assert runtime.lifecycle.get("node1").state is LifecycleState.REGISTERING


def test_on_settled_reports_outcome(runtime, scheduler):
    settled = []
    runtime.lifecycle.create("node1", 50051)
    runtime.lifecycle.create("node2", 50052)
    runtime.poller.start("node1", lambda: True, on_settled=lambda node, state: settled.append((node, state)))
    runtime.poller.start(
        "node2",
        lambda: False,
        max_attempts=2,
        on_settled=lambda node, state: settled.append((node, state)),
    )
    scheduler.advance(2.0)
    assert settled == [("node1", LifecycleState.ACTIVE), ("node2", LifecycleState.FAILED)]


def test_outstanding_check_is_never_overlapped(deferred_runtime, deferred_scheduler):
    deferred_runtime.lifecycle.create("node1", 50051)
    check, calls = _scripted(True)
    deferred_runtime.poller.start("node1", check)

    deferred_scheduler.advance(3.0)
    assert len(deferred_scheduler.outstanding) == 1
    assert deferred_runtime.poller.get("node1").attempt.attempt_count == 3
    assert calls == []

    deferred_scheduler.complete_next()
    assert calls == [1]
    assert deferred_runtime.lifecycle.get("node1").state is LifecycleState.ACTIVE


def test_check_that_never_answers_still_fails_on_schedule(deferred_runtime, deferred_scheduler):
    deferred_runtime.lifecycle.create("node1", 50051)
    check, _ = _scripted(True)
    deferred_runtime.poller.start("node1", check)

    deferred_scheduler.advance(14.0)
    assert deferred_runtime.lifecycle.get("node1").state is LifecycleState.REGISTERING
    deferred_scheduler.advance(1.0)
    entry = deferred_runtime.lifecycle.get("node1")
    assert entry.state is LifecycleState.FAILED
    assert entry.error == TIMEOUT_MESSAGE

    deferred_scheduler.complete_next()
    assert deferred_runtime.lifecycle.get("node1").state is LifecycleState.FAILED
    assert not deferred_runtime.poller.is_polling("node1")
