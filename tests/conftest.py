from __future__ import annotations

import pytest

from storage_console.config import ConsoleConfig
from storage_console.models import ChunkAssignment, Distribution, FileRecord, NetworkStatus, NodeRecord, StartDecision
from storage_console.runtime import ConsoleRuntime
from storage_console.scheduling import SimulatedScheduler


class FakeNetworkClient:
    """In-memory stand-in for the storage backend."""

    def __init__(self) -> None:
        self.nodes = [NodeRecord("node-a", 50051), NodeRecord("node-b", 50052)]
        self.running = {"node-a"}
        self.files = [FileRecord("f-1", "notes.pdf", size_bytes=2048)]
        self.status = NetworkStatus(total_nodes=2, total_storage_bytes=10_000, used_storage_bytes=2048)
        self.start_decision = StartDecision(accepted=True)
        self.running_responses: list = []
        self.failures: dict = {}
        self.distributions: dict = {}
        self.calls: list = []
        self.start_calls: list = []
        self.uploads: list = []

    def _record(self, name: str) -> None:
        self.calls.append(name)
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def request_node_start(self, node_id, port, storage_gb, ram_gb):
        self._record("request_node_start")
        self.start_calls.append((node_id, port, storage_gb, ram_gb))
        return self.start_decision

    def query_running_set(self):
        self.calls.append("query_running_set")
        if self.running_responses:
            item = self.running_responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return set(item)
        exc = self.failures.get("query_running_set")
        if exc is not None:
            raise exc
        return set(self.running)

    def query_nodes(self):
        self._record("query_nodes")
        return list(self.nodes)

    def query_files(self):
        self._record("query_files")
        return list(self.files)

    def query_network_status(self):
        self._record("query_network_status")
        return self.status

    def stop_node(self, node_id):
        self._record("stop_node")
        self.running.discard(node_id)
        return {"success": True}

    def restart_node(self, node_id, port, storage_gb, ram_gb):
        self._record("restart_node")
        self.start_calls.append((node_id, port, storage_gb, ram_gb))
        return {"success": True}

    def delete_node(self, node_id):
        self._record("delete_node")
        self.nodes = [node for node in self.nodes if node.node_id != node_id]
        return {"success": True}

    def delete_all_nodes(self):
        self._record("delete_all_nodes")
        self.running.clear()
        return {"success": True}

    def request_file_upload(self, file_name, data):
        self._record("request_file_upload")
        file_id = f"file-{len(self.uploads) + 1}"
        self.uploads.append((file_id, file_name, data))
        return file_id

    def query_distribution(self, file_id):
        self._record("query_distribution")
        return self.distributions.get(
            file_id,
            Distribution(
                file_id=file_id,
                file_name="",
                assignments=(
                    ChunkAssignment(0, "node-a"),
                    ChunkAssignment(1, "node-b"),
                    ChunkAssignment(2, "node-a"),
                ),
            ),
        )

    def delete_file(self, file_id):
        self._record("delete_file")
        return {"success": True}


class DeferredIoScheduler(SimulatedScheduler):
    """Simulated clock whose blocking calls stay outstanding until completed by hand."""

    def __init__(self) -> None:
        super().__init__()
        self.outstanding: list = []

    def run_io(self, fn, *args, on_done):
        self.outstanding.append((fn, args, on_done))

    def complete_next(self) -> None:
        fn, args, on_done = self.outstanding.pop(0)
        SimulatedScheduler.run_io(self, fn, *args, on_done=on_done)


@pytest.fixture
def scheduler() -> SimulatedScheduler:
    return SimulatedScheduler()


@pytest.fixture
def fake_client() -> FakeNetworkClient:
    return FakeNetworkClient()


@pytest.fixture
def dev_config() -> ConsoleConfig:
    cfg = ConsoleConfig.default()
    cfg.environment = "development"
    return cfg


@pytest.fixture
def runtime(fake_client, scheduler) -> ConsoleRuntime:
    return ConsoleRuntime.bootstrap(ConsoleConfig.default(), client=fake_client, scheduler=scheduler)


@pytest.fixture
def deferred_scheduler() -> DeferredIoScheduler:
    return DeferredIoScheduler()


@pytest.fixture
def deferred_runtime(fake_client, deferred_scheduler) -> ConsoleRuntime:
    return ConsoleRuntime.bootstrap(ConsoleConfig.default(), client=fake_client, scheduler=deferred_scheduler)


@pytest.fixture
def dev_runtime(fake_client, scheduler, dev_config) -> ConsoleRuntime:
    return ConsoleRuntime.bootstrap(dev_config, client=fake_client, scheduler=scheduler)
