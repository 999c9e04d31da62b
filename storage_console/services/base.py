"""Base class for orchestration services."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import ConsoleConfig
from ..telemetry import TelemetryCollector

logger = logging.getLogger(__name__)


class PreconditionViolation(RuntimeError):
    """A caller broke a contract of the core (duplicate entry, double poller, ...)."""


@dataclass
class BaseService:
    config: ConsoleConfig
    telemetry: TelemetryCollector

    def emit_metric(self, name: str, value: float, **labels: str) -> None:
        self.telemetry.emit_metric(name, value, labels)

    def emit_event(self, message: str, **attrs: object) -> None:
        self.telemetry.emit_event(message, attrs)

    def violate(self, message: str) -> None:
        """Raise in development, log and carry on in production."""
        if self.config.strict_preconditions:
            raise PreconditionViolation(message)
        logger.error("Precondition violated: %s", message)
        self.telemetry.emit_event("precondition_violation", {"detail": message}, event_type="error")
