"""Node lifecycle orchestration and chunk-distribution tracking for the storage console."""

from .config import ConsoleConfig  # noqa: F401
from .runtime import ConsoleRuntime  # noqa: F401
