"""Configuration primitives for the storage console orchestration core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class BackendConfig:
    base_url: str = "http://localhost:8081/api"
    token: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "lifecycle.transitions",
        "refresh.cycles",
        "distribution.presented",
        "ui.activity",
    ])


@dataclass
class ProvisioningPolicyConfig:
    base_port: int = 50051
    node_storage_gb: int = 5
    node_ram_gb: int = 8
    node_id_prefix: str = "node"


@dataclass
class LifecyclePolicyConfig:
    max_attempts: int = 15
    poll_interval_seconds: float = 1.0
    active_retention_seconds: float = 3.0


@dataclass
class RefreshPolicyConfig:
    interval_seconds: float = 5.0


@dataclass
class DistributionPolicyConfig:
    reveal_interval_seconds: float = 0.5
    linger_seconds: float = 1.0


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"
    activity_history: int = 200
    metric_history: int = 1000
    notice_ttl_seconds: float = 3.0


@dataclass
class ConsoleConfig:
    backend: BackendConfig
    message_bus: MessageBusConfig
    provisioning: ProvisioningPolicyConfig
    lifecycle: LifecyclePolicyConfig
    refresh: RefreshPolicyConfig
    distribution: DistributionPolicyConfig
    observability: ObservabilityConfig
    environment: str = "production"

    @property
    def strict_preconditions(self) -> bool:
        return self.environment == "development"

    @staticmethod
    def default() -> "ConsoleConfig":
        return ConsoleConfig(
            backend=BackendConfig(),
            message_bus=MessageBusConfig(),
            provisioning=ProvisioningPolicyConfig(),
            lifecycle=LifecyclePolicyConfig(),
            refresh=RefreshPolicyConfig(),
            distribution=DistributionPolicyConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def from_env() -> "ConsoleConfig":
        cfg = ConsoleConfig.default()
        cfg.backend.base_url = os.environ.get("STORAGE_CONSOLE_BACKEND_URL", cfg.backend.base_url)
        cfg.backend.token = os.environ.get("STORAGE_CONSOLE_TOKEN") or None
        timeout = os.environ.get("STORAGE_CONSOLE_TIMEOUT")
        if timeout:
            cfg.backend.timeout_seconds = float(timeout)
        cfg.environment = os.environ.get("STORAGE_CONSOLE_ENV", cfg.environment).strip().lower()
        cfg.observability.log_level = os.environ.get("STORAGE_CONSOLE_LOG_LEVEL", cfg.observability.log_level)
        return cfg
