"""Operator commands: provisioning, node control and the upload path."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Optional

from ..messaging import UI_ACTIVITY, InMemoryBus, MessageEnvelope
from ..models import LifecycleState, OperationOutcome
from .base import BaseService
from .confirmation_poller import ConfirmationPoller
from .distribution_tracker import ChunkDistributionTracker
from .lifecycle_service import STARTING_PROGRESS, LifecycleStateMachine
from .port_allocator import allocate_port
from .refresh_scheduler import CachedCollections, RefreshScheduler

logger = logging.getLogger(__name__)


@dataclass
class NodeOperations(BaseService):
    """Delegates to the storage backend and reports outcomes instead of raising.

    Every method blocks on the backend; callers on an event loop run them in
    an executor. Operator notices go out on the ``ui.activity`` topic.
    """

    client: Any
    lifecycle: LifecycleStateMachine
    poller: ConfirmationPoller
    refresher: RefreshScheduler
    store: CachedCollections
    tracker: ChunkDistributionTracker
    bus: InMemoryBus | None = None

    def start_node(self, storage_gb: Optional[int] = None, ram_gb: Optional[int] = None) -> OperationOutcome:
        policy = self.config.provisioning
        node_id = f"{policy.node_id_prefix}-{uuid.uuid4().hex[:8]}"
        port = allocate_port(self.store.known_ports() | self.lifecycle.reserved_ports(), policy.base_port)
        if self.lifecycle.create(node_id, port) is None:
            return OperationOutcome(ok=False, message=f"Could not reserve port {port} for {node_id}", node_id=node_id)
        self._announce(f"Creating node on port {port}...", "info")
        self.lifecycle.advance(node_id, LifecycleState.STARTING, STARTING_PROGRESS)

        try:
            decision = self.client.request_node_start(
                node_id,
                port,
                storage_gb or policy.node_storage_gb,
                ram_gb or policy.node_ram_gb,
            )
        except Exception as exc:
            logger.warning("Start request for %s failed: %s", node_id, exc)
            self.lifecycle.mark_failed(node_id, str(exc) or exc.__class__.__name__)
            return OperationOutcome(ok=False, message=f"Failed to create node: {exc}", node_id=node_id, port=port)

        if not decision.accepted:
            reason = decision.reason or "Unknown error"
            self.lifecycle.mark_failed(node_id, reason)
            return OperationOutcome(ok=False, message=f"Failed to create node: {reason}", node_id=node_id, port=port)

        self.poller.start(
            node_id,
            lambda: node_id in self.client.query_running_set(),
            on_settled=self._on_settled,
        )
        self.emit_event("node_start_requested", node_id=node_id, port=port)
        return OperationOutcome(ok=True, message=f"Node {node_id} registering", node_id=node_id, port=port)

    def stop_node(self, node_id: str) -> OperationOutcome:
        return self._delegate("Node stopped", "Failed to stop node", node_id, self.client.stop_node, node_id)

    def restart_node(self, node_id: str, storage_gb: Optional[int] = None, ram_gb: Optional[int] = None) -> OperationOutcome:
        policy = self.config.provisioning
        known = self.store.snapshot().node(node_id)
        port = known.port if known and known.port else None
        if port is None:
            port = allocate_port(self.store.known_ports() | self.lifecycle.reserved_ports(), policy.base_port)
        return self._delegate(
            "Node restarted",
            "Failed to restart node",
            node_id,
            self.client.restart_node,
            node_id,
            port,
            storage_gb or policy.node_storage_gb,
            ram_gb or policy.node_ram_gb,
        )

    def delete_node(self, node_id: str) -> OperationOutcome:
        return self._delegate("Node deleted", "Failed to delete node", node_id, self.client.delete_node, node_id)

    def delete_all_nodes(self) -> OperationOutcome:
        return self._delegate("All nodes stopped", "Failed to stop nodes", None, self.client.delete_all_nodes)

    def dismiss(self, node_id: str) -> OperationOutcome:
        if self.lifecycle.dismiss(node_id):
            return OperationOutcome(ok=True, message=f"Dismissed {node_id}", node_id=node_id)
        return OperationOutcome(ok=False, message=f"No failed entry for {node_id}", node_id=node_id)

    def upload_file(self, file_name: str, data: bytes) -> OperationOutcome:
        try:
            file_id = self.client.request_file_upload(file_name, data)
        except Exception as exc:
            logger.warning("Upload of %s failed: %s", file_name, exc)
            self._announce("Upload failed", "error")
            return OperationOutcome(ok=False, message=f"Upload failed: {exc}")
        self._announce("File uploaded successfully!", "success")
        try:
            distribution = self.client.query_distribution(file_id)
        except Exception as exc:  # the upload itself succeeded
            logger.warning("Could not fetch distribution for %s: %s", file_id, exc)
        else:
            if not distribution.file_name:
                distribution = replace(distribution, file_name=file_name)
            self.tracker.present(distribution)
        self.refresher.refresh_now()
        return OperationOutcome(ok=True, message=f"Uploaded {file_name}", file_id=file_id)

    def delete_file(self, file_id: str) -> OperationOutcome:
        outcome = self._delegate("File deleted", "Delete failed", None, self.client.delete_file, file_id)
        outcome.file_id = file_id
        return outcome

    def _delegate(self, success: str, failure: str, node_id: Optional[str], call, *args) -> OperationOutcome:
        try:
            call(*args)
        except Exception as exc:
            logger.warning("%s (%s): %s", failure, node_id or "-", exc)
            self._announce(failure, "error")
            return OperationOutcome(ok=False, message=f"{failure}: {exc}", node_id=node_id)
        self._announce(success, "success")
        self.refresher.refresh_now()
        return OperationOutcome(ok=True, message=success, node_id=node_id)

    def _on_settled(self, node_id: str, outcome: LifecycleState) -> None:
        if outcome is LifecycleState.ACTIVE:
            self.refresher.request_refresh()

    def _announce(self, message: str, level: str) -> None:
        if self.bus is not None:
            self.bus.publish(MessageEnvelope(topic=UI_ACTIVITY, payload={"message": message, "level": level}))
