"""Public HTTP API (FastAPI) for the console runtime."""

from .server import app  # noqa: F401  (re-export for convenience)
