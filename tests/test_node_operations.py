from __future__ import annotations

import pytest

from storage_console.models import LifecycleState, StartDecision
from storage_console.services.base import PreconditionViolation


def test_start_node_provisions_and_confirms(runtime, scheduler, fake_client):
    outcome = runtime.operations.start_node()
    assert outcome.ok
    node_id = outcome.node_id
    assert node_id.startswith("node-")
    assert outcome.port == 50051
    assert fake_client.start_calls == [(node_id, 50051, 5, 8)]
    entry = runtime.lifecycle.get(node_id)
    assert (entry.state, entry.progress) == (LifecycleState.REGISTERING, 60)

    fake_client.running.add(node_id)
    fake_client.calls.clear()
    scheduler.advance(1.0)
    assert runtime.lifecycle.get(node_id).state is LifecycleState.ACTIVE
    assert "query_nodes" in fake_client.calls
    messages = [notice.message for notice in runtime.activity.recent()]
    assert f"Node {node_id} is active!" in messages
    assert "Creating node on port 50051..." in messages


def test_port_allocation_accounts_for_cache_and_inflight_entries(runtime):
    runtime.refresher.refresh_now()
    first = runtime.operations.start_node()
    second = runtime.operations.start_node()
    assert (first.port, second.port) == (50053, 50054)


def test_active_node_port_is_not_reused_while_node_list_is_stale(runtime, scheduler, fake_client):
    fake_client.failures["query_nodes"] = ConnectionError("registry unreachable")
    first = runtime.operations.start_node()
    fake_client.running.add(first.node_id)
    scheduler.advance(1.0)
    assert runtime.lifecycle.get(first.node_id).state is LifecycleState.ACTIVE
    assert runtime.collections_snapshot().node(first.node_id) is None

    second = runtime.operations.start_node()
    assert (first.port, second.port) == (50051, 50052)


def test_operator_notices_go_out_on_the_activity_topic(runtime, fake_client):
    published = []
    runtime.bus.subscribe("ui.activity", lambda envelope: published.append(envelope.payload))
    runtime.operations.stop_node("node-a")
    fake_client.failures["request_file_upload"] = ConnectionError("down")
    runtime.operations.upload_file("notes.txt", b"hello")
    assert published == [
        {"message": "Node stopped", "level": "success"},
        {"message": "Upload failed", "level": "error"},
    ]
    assert runtime.activity.recent(1)[0].message == "Upload failed"


def test_activation_refresh_does_not_block_the_timer_thread(deferred_runtime, deferred_scheduler, fake_client):
    outcome = deferred_runtime.operations.start_node()
    fake_client.running.add(outcome.node_id)
    deferred_scheduler.advance(1.0)
    deferred_scheduler.complete_next()
    assert deferred_runtime.lifecycle.get(outcome.node_id).state is LifecycleState.ACTIVE
    assert "query_nodes" not in fake_client.calls
    assert deferred_runtime.refresher.in_flight

    deferred_scheduler.complete_next()
    assert "query_nodes" in fake_client.calls
    assert deferred_runtime.refresher.cycles == 1


def test_rejected_start_fails_immediately_with_backend_reason(runtime, scheduler, fake_client):
    fake_client.start_decision = StartDecision(accepted=False, reason="Node is already running")
    outcome = runtime.operations.start_node(storage_gb=20, ram_gb=4)
    assert not outcome.ok
    entry = runtime.lifecycle.get(outcome.node_id)
    assert entry.state is LifecycleState.FAILED
    assert entry.error == "Node is already running"
    assert not runtime.poller.is_polling(outcome.node_id)
    assert fake_client.start_calls[0][2:] == (20, 4)

    scheduler.advance(60.0)
    assert runtime.lifecycle.get(outcome.node_id).state is LifecycleState.FAILED
    assert runtime.operations.dismiss(outcome.node_id).ok
    assert runtime.lifecycle.get(outcome.node_id) is None


def test_transport_error_on_start_marks_entry_failed(runtime, fake_client):
    fake_client.failures["request_node_start"] = ConnectionError("connection refused")
    outcome = runtime.operations.start_node()
    assert not outcome.ok
    entry = runtime.lifecycle.get(outcome.node_id)
    assert entry.state is LifecycleState.FAILED
    assert entry.error == "connection refused"


def test_start_node_surfaces_precondition_violation_in_development(dev_runtime, monkeypatch):
    monkeypatch.setattr(
        "storage_console.services.node_operations.allocate_port",
        lambda existing, start_from: 50051,
    )
    dev_runtime.operations.start_node()
    with pytest.raises(PreconditionViolation):
        dev_runtime.operations.start_node()


def test_stop_and_delete_delegate_and_refresh(runtime, fake_client):
    outcome = runtime.operations.stop_node("node-a")
    assert outcome.ok and outcome.message == "Node stopped"
    assert "stop_node" in fake_client.calls
    assert "node-a" not in runtime.collections_snapshot().running

    outcome = runtime.operations.delete_node("node-b")
    assert outcome.ok
    assert [node.node_id for node in runtime.collections_snapshot().nodes] == ["node-a"]


def test_failed_delegate_reports_outcome_instead_of_raising(runtime, fake_client):
    fake_client.failures["stop_node"] = RuntimeError("409: Node node-x is not running")
    outcome = runtime.operations.stop_node("node-x")
    assert not outcome.ok
    assert "Failed to stop node" in outcome.message
    assert runtime.activity.recent(1)[0].level == "error"


def test_restart_reuses_cached_port(runtime, fake_client):
    runtime.refresher.refresh_now()
    assert runtime.operations.restart_node("node-b").ok
    assert fake_client.start_calls[-1] == ("node-b", 50052, 5, 8)

    assert runtime.operations.restart_node("node-unknown").ok
    assert fake_client.start_calls[-1][1] == 50053


def test_delete_all_nodes(runtime, fake_client):
    assert runtime.operations.delete_all_nodes().ok
    assert fake_client.running == set()


def test_upload_presents_distribution(runtime, scheduler, fake_client):
    outcome = runtime.operations.upload_file("lease.pdf", b"x" * 10)
    assert outcome.ok
    assert outcome.file_id == "file-1"
    progress = runtime.distribution_progress()
    assert progress.file_id == "file-1"
    assert progress.file_name == "lease.pdf"
    assert progress.total_chunks == 3
    assert "query_files" in fake_client.calls

    scheduler.advance(1.5)
    assert runtime.distribution_progress().complete


def test_upload_failure_does_not_present(runtime, fake_client):
    fake_client.failures["request_file_upload"] = ConnectionError("too large")
    outcome = runtime.operations.upload_file("big.iso", b"")
    assert not outcome.ok
    assert runtime.distribution_progress() is None


def test_missing_distribution_keeps_upload_successful(runtime, fake_client):
    fake_client.failures["query_distribution"] = ConnectionError("timeout")
    outcome = runtime.operations.upload_file("notes.txt", b"hi")
    assert outcome.ok
    assert runtime.distribution_progress() is None


def test_delete_file(runtime, fake_client):
    outcome = runtime.operations.delete_file("f-1")
    assert outcome.ok
    assert outcome.file_id == "f-1"
    assert "delete_file" in fake_client.calls
