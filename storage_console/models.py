"""Data models shared across the orchestration services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


@dataclass
class NodeRecord:
    node_id: str
    port: Optional[int]
    host: str = "localhost"
    address: Optional[str] = None
    running: bool = False


@dataclass
class FileRecord:
    file_id: str
    file_name: str
    size_bytes: int = 0
    uploaded_at: Optional[str] = None
    storage_hint: Optional[str] = None


@dataclass
class NetworkStatus:
    total_nodes: int = 0
    total_storage_bytes: int = 0
    used_storage_bytes: int = 0
    utilization_percent: float = 0.0
    total_chunks: int = 0


class LifecycleState(str, Enum):
    CREATING = "creating"
    STARTING = "starting"
    REGISTERING = "registering"
    ACTIVE = "active"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (LifecycleState.ACTIVE, LifecycleState.FAILED)

    @property
    def rank(self) -> int:
        # ACTIVE and FAILED share the final rank.
        return min(_STATE_ORDER.index(self), 3)


_STATE_ORDER = [
    LifecycleState.CREATING,
    LifecycleState.STARTING,
    LifecycleState.REGISTERING,
    LifecycleState.ACTIVE,
    LifecycleState.FAILED,
]


@dataclass(frozen=True)
class LifecycleEntry:
    node_id: str
    state: LifecycleState
    progress: float
    port: int
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, object]:
        return {
            "nodeId": self.node_id,
            "state": self.state.value,
            "progress": self.progress,
            "port": self.port,
            "error": self.error,
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class PollAttempt:
    attempt_count: int = 0
    max_attempts: int = 15
    interval: float = 1.0

    @property
    def exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


@dataclass(frozen=True)
class ChunkAssignment:
    chunk_index: int
    node_id: str
    size_bytes: int = 0


@dataclass(frozen=True)
class Distribution:
    file_id: str
    file_name: str
    assignments: Tuple[ChunkAssignment, ...] = ()

    def __len__(self) -> int:
        return len(self.assignments)


@dataclass(frozen=True)
class NodeProgress:
    node_id: str
    chunk_indices: Tuple[int, ...]
    confirmed_count: int

    @property
    def complete(self) -> bool:
        return self.confirmed_count == len(self.chunk_indices)


@dataclass(frozen=True)
class DistributionProgress:
    file_id: str
    file_name: str
    total_chunks: int
    confirmed: FrozenSet[int]
    nodes: Tuple[NodeProgress, ...]
    replication_factor: float

    @property
    def complete(self) -> bool:
        return len(self.confirmed) == self.total_chunks

    def node(self, node_id: str) -> Optional[NodeProgress]:
        return next((item for item in self.nodes if item.node_id == node_id), None)

    def to_dict(self) -> Dict[str, object]:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "totalChunks": self.total_chunks,
            "confirmedChunks": sorted(self.confirmed),
            "replicationFactor": self.replication_factor,
            "complete": self.complete,
            "nodes": [
                {
                    "nodeId": item.node_id,
                    "chunkIndices": list(item.chunk_indices),
                    "confirmedCount": item.confirmed_count,
                    "complete": item.complete,
                }
                for item in self.nodes
            ],
        }


@dataclass(frozen=True)
class StartDecision:
    accepted: bool
    reason: Optional[str] = None


@dataclass
class OperationOutcome:
    ok: bool
    message: str
    node_id: Optional[str] = None
    port: Optional[int] = None
    file_id: Optional[str] = None


@dataclass
class ActivityNotice:
    message: str
    level: str = "info"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ObservabilityEvent:
    event_type: str
    message: str
    attributes: Optional[dict] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
