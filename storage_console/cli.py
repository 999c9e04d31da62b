"""Command-line entry points for driving the console core without the HTTP layer."""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import logging
from dataclasses import asdict
from typing import Iterable, Optional

from .config import ConsoleConfig
from .messaging import LIFECYCLE_TRANSITIONS, MessageEnvelope
from .models import LifecycleEntry
from .runtime import ConsoleRuntime
from .scheduling import AsyncioScheduler, SimulatedScheduler

_LOGGER = logging.getLogger("storage_console.cli")


def run_cli(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Storage console orchestration tools")
    parser.add_argument("--base-url", help="Storage backend REST endpoint (defaults to STORAGE_CONSOLE_BACKEND_URL)")
    parser.add_argument("--token", help="Bearer token for the storage backend")
    sub = parser.add_subparsers(dest="command", required=True)

    provision = sub.add_parser("provision", help="Start one node and follow it until it is active or failed")
    provision.add_argument("--storage-gb", type=int, default=None)
    provision.add_argument("--ram-gb", type=int, default=None)
    provision.set_defaults(handler=_run_provision)

    status = sub.add_parser("status", help="Run one refresh cycle and print the cached collections")
    status.set_defaults(handler=_run_status)

    args = parser.parse_args(list(argv) if argv is not None else None)
    config = ConsoleConfig.from_env()
    if args.base_url:
        config.backend.base_url = args.base_url
    if args.token:
        config.backend.token = args.token
    logging.basicConfig(level=config.observability.log_level, format="[%(asctime)s] %(levelname)s %(message)s")
    return args.handler(args, config)


def _run_provision(args: argparse.Namespace, config: ConsoleConfig) -> int:
    entry = asyncio.run(_provision(config, args.storage_gb, args.ram_gb))
    if entry is None:
        return 1
    print(json.dumps(entry.to_dict(), indent=2))
    return 0 if entry.state.value == "active" else 1


async def _provision(config: ConsoleConfig, storage_gb: Optional[int], ram_gb: Optional[int]) -> Optional[LifecycleEntry]:
    loop = asyncio.get_running_loop()
    runtime = ConsoleRuntime.bootstrap(config, scheduler=AsyncioScheduler(loop))
    settled: asyncio.Future = loop.create_future()

    def _settle(node_id: str) -> None:
        if not settled.done():
            settled.set_result(node_id)

    def _on_transition(envelope: MessageEnvelope) -> None:
        payload = envelope.payload
        _LOGGER.info("%s -> %s (%.1f%%)", payload["node_id"], payload["state"], payload["progress"])
        if payload["state"] in ("active", "failed"):
            # Transitions may be published from the executor thread.
            loop.call_soon_threadsafe(_settle, payload["node_id"])

    runtime.bus.subscribe(LIFECYCLE_TRANSITIONS, _on_transition)
    try:
        start = functools.partial(runtime.operations.start_node, storage_gb=storage_gb, ram_gb=ram_gb)
        outcome = await loop.run_in_executor(None, start)
        _LOGGER.info(outcome.message)
        if outcome.node_id is None:
            return None
        entry = runtime.lifecycle.get(outcome.node_id)
        if entry is not None and not entry.state.terminal:
            await settled
            entry = runtime.lifecycle.get(outcome.node_id)
        return entry
    finally:
        runtime.shutdown()


def _run_status(args: argparse.Namespace, config: ConsoleConfig) -> int:
    # One synchronous cycle; no timers ever fire here.
    runtime = ConsoleRuntime.bootstrap(config, scheduler=SimulatedScheduler())
    try:
        results = runtime.refresher.refresh_now()
        snapshot = runtime.collections_snapshot()
    finally:
        runtime.shutdown()
    payload = {
        "results": results,
        "nodes": [asdict(node) for node in snapshot.nodes],
        "files": [asdict(item) for item in snapshot.files],
        "networkStatus": asdict(snapshot.status) if snapshot.status else None,
        "errors": {name: error for name, error in snapshot.last_errors.items() if error},
    }
    print(json.dumps(payload, indent=2, default=str))
    return 0 if all(results.values()) else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(run_cli())
