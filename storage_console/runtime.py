"""Runtime wiring for the storage console orchestration core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .clients.network_client import StorageNetworkClient
from .config import ConsoleConfig
from .messaging import InMemoryBus, build_bus
from .models import DistributionProgress, LifecycleEntry
from .scheduling import AsyncioScheduler, CancelScope, Scheduler
from .services.activity_service import ActivityService
from .services.confirmation_poller import ConfirmationPoller
from .services.distribution_tracker import ChunkDistributionTracker
from .services.lifecycle_service import LifecycleStateMachine
from .services.node_operations import NodeOperations
from .services.refresh_scheduler import CachedCollections, CollectionsSnapshot, RefreshScheduler
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)


@dataclass
class ConsoleRuntime:
    config: ConsoleConfig
    client: Any
    scheduler: Scheduler
    scope: CancelScope
    bus: InMemoryBus
    telemetry: TelemetryCollector
    store: CachedCollections
    lifecycle: LifecycleStateMachine
    poller: ConfirmationPoller
    refresher: RefreshScheduler
    tracker: ChunkDistributionTracker
    activity: ActivityService
    operations: NodeOperations

    @classmethod
    def bootstrap(
        cls,
        config: Optional[ConsoleConfig] = None,
        *,
        client: Any = None,
        scheduler: Optional[Scheduler] = None,
    ) -> "ConsoleRuntime":
        cfg = config or ConsoleConfig.default()
        client = client or StorageNetworkClient.from_config(cfg.backend)
        scheduler = scheduler or AsyncioScheduler()
        scope = CancelScope("console")
        bus = build_bus(cfg.message_bus)
        telemetry = TelemetryCollector(cfg.observability)
        store = CachedCollections()

        activity = ActivityService(bus=bus, telemetry=telemetry)
        lifecycle = LifecycleStateMachine(
            config=cfg,
            telemetry=telemetry,
            scheduler=scheduler,
            scope=scope,
            bus=bus,
        )
        poller = ConfirmationPoller(
            config=cfg,
            telemetry=telemetry,
            lifecycle=lifecycle,
            scheduler=scheduler,
            scope=scope,
        )
        refresher = RefreshScheduler(
            config=cfg,
            telemetry=telemetry,
            store=store,
            fetchers={
                "nodes": client.query_nodes,
                "running": client.query_running_set,
                "files": client.query_files,
                "status": client.query_network_status,
            },
            scheduler=scheduler,
            scope=scope,
            bus=bus,
        )
        tracker = ChunkDistributionTracker(
            config=cfg,
            telemetry=telemetry,
            scheduler=scheduler,
            scope=scope,
            bus=bus,
        )
        operations = NodeOperations(
            config=cfg,
            telemetry=telemetry,
            client=client,
            lifecycle=lifecycle,
            poller=poller,
            refresher=refresher,
            store=store,
            tracker=tracker,
            bus=bus,
        )
        return cls(
            config=cfg,
            client=client,
            scheduler=scheduler,
            scope=scope,
            bus=bus,
            telemetry=telemetry,
            store=store,
            lifecycle=lifecycle,
            poller=poller,
            refresher=refresher,
            tracker=tracker,
            activity=activity,
            operations=operations,
        )

    def start(self) -> None:
        self.refresher.start()

    def shutdown(self) -> None:
        """Tear down every timer owned by this runtime."""
        self.poller.cancel_all()
        self.tracker.cancel()
        self.refresher.stop()
        self.scope.cancel()
        logger.info("Console runtime stopped")

    # Read-only views ---------------------------------------------------

    def lifecycle_snapshot(self) -> Dict[str, LifecycleEntry]:
        return self.lifecycle.snapshot()

    def collections_snapshot(self) -> CollectionsSnapshot:
        return self.store.snapshot()

    def distribution_progress(self) -> Optional[DistributionProgress]:
        return self.tracker.progress()
