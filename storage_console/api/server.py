"""FastAPI surface exposing console snapshots and operator commands."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Callable, Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from ..config import ConsoleConfig
from ..models import NodeRecord, OperationOutcome
from ..runtime import ConsoleRuntime
from ..scheduling import AsyncioScheduler

logger = logging.getLogger(__name__)

runtime: Optional[ConsoleRuntime] = None


@asynccontextmanager
async def _lifespan(app: FastAPI):
    global runtime
    owned = runtime is None
    if owned:
        runtime = ConsoleRuntime.bootstrap(
            ConsoleConfig.from_env(),
            scheduler=AsyncioScheduler(asyncio.get_running_loop()),
        )
        runtime.start()
        logger.info("Console runtime started against %s", runtime.config.backend.base_url)
    try:
        yield
    finally:
        if owned and runtime is not None:
            runtime.shutdown()
            runtime = None


app = FastAPI(title="Storage Console API", version="0.1.0", lifespan=_lifespan)

_cors_origins = [origin.strip() for origin in os.environ.get("STORAGE_CONSOLE_CORS_ORIGINS", "*").split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins or ["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class _CamelAliasModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NodeStartRequest(_CamelAliasModel):
    storage_gb: Optional[int] = Field(default=None, gt=0, alias="storageGB")
    ram_gb: Optional[int] = Field(default=None, gt=0, alias="ramGB")


def _get_runtime() -> ConsoleRuntime:
    if runtime is None:
        raise HTTPException(status_code=503, detail="Console runtime unavailable")
    return runtime


async def _blocking(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a backend-bound call in the default executor so the loop keeps ticking."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def _serialize_outcome(outcome: OperationOutcome) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": outcome.ok, "message": outcome.message}
    if outcome.node_id:
        payload["nodeId"] = outcome.node_id
    if outcome.port is not None:
        payload["port"] = outcome.port
    if outcome.file_id:
        payload["fileId"] = outcome.file_id
    return payload


def _ensure_ok(outcome: OperationOutcome, status_code: int = 502) -> dict[str, Any]:
    if not outcome.ok:
        raise HTTPException(status_code=status_code, detail=outcome.message)
    return _serialize_outcome(outcome)


def _serialize_node(node: NodeRecord) -> dict[str, Any]:
    return {
        "nodeId": node.node_id,
        "host": node.host,
        "port": node.port,
        "address": node.address or (f"{node.host}:{node.port}" if node.port else None),
        "running": node.running,
    }


@app.get("/v1/console/lifecycle")
async def list_lifecycle_entries():
    entries = _get_runtime().lifecycle_snapshot()
    return [entry.to_dict() for entry in entries.values()]


@app.post("/v1/console/nodes")
async def start_node(payload: Optional[NodeStartRequest] = None):
    request = payload or NodeStartRequest()
    console = _get_runtime()
    outcome = await _blocking(console.operations.start_node, storage_gb=request.storage_gb, ram_gb=request.ram_gb)
    entry = console.lifecycle.get(outcome.node_id) if outcome.node_id else None
    lifecycle = entry.to_dict() if entry else None
    if not outcome.ok:
        # The rejected start stays tracked as a Failed entry until dismissed.
        raise HTTPException(
            status_code=502,
            detail={"message": outcome.message, "nodeId": outcome.node_id, "lifecycle": lifecycle},
        )
    response = _serialize_outcome(outcome)
    response["lifecycle"] = lifecycle
    return response


@app.post("/v1/console/nodes/{node_id}:stop")
async def stop_node(node_id: str):
    return _ensure_ok(await _blocking(_get_runtime().operations.stop_node, node_id))


@app.post("/v1/console/nodes/{node_id}:restart")
async def restart_node(node_id: str, payload: Optional[NodeStartRequest] = None):
    request = payload or NodeStartRequest()
    outcome = await _blocking(
        _get_runtime().operations.restart_node, node_id, storage_gb=request.storage_gb, ram_gb=request.ram_gb
    )
    return _ensure_ok(outcome)


@app.delete("/v1/console/nodes/{node_id}")
async def delete_node(node_id: str):
    return _ensure_ok(await _blocking(_get_runtime().operations.delete_node, node_id))


@app.post("/v1/console/nodes:delete-all")
async def delete_all_nodes():
    return _ensure_ok(await _blocking(_get_runtime().operations.delete_all_nodes))


@app.post("/v1/console/lifecycle/{node_id}:dismiss")
async def dismiss_entry(node_id: str):
    return _ensure_ok(_get_runtime().operations.dismiss(node_id), status_code=404)


@app.get("/v1/console/collections")
async def get_collections():
    snapshot = _get_runtime().collections_snapshot()
    return {
        "nodes": [_serialize_node(node) for node in snapshot.nodes],
        "runningNodes": sorted(snapshot.running),
        "files": [asdict(item) for item in snapshot.files],
        "networkStatus": asdict(snapshot.status) if snapshot.status else None,
        "lastUpdated": {name: stamp.isoformat() if stamp else None for name, stamp in snapshot.last_updated.items()},
        "lastErrors": snapshot.last_errors,
    }


@app.post("/v1/console/collections:refresh")
async def refresh_collections():
    results = await _blocking(_get_runtime().refresher.refresh_now)
    return {"results": results}


@app.post("/v1/console/files")
async def upload_file(file: UploadFile = File(...)):
    if not file.filename:
        raise HTTPException(status_code=400, detail="File name is required")
    try:
        data = await file.read()
    finally:
        await file.close()
    outcome = await _blocking(_get_runtime().operations.upload_file, file.filename, data)
    response = _ensure_ok(outcome)
    progress = _get_runtime().distribution_progress()
    response["distribution"] = progress.to_dict() if progress else None
    return response


@app.delete("/v1/console/files/{file_id}")
async def delete_file(file_id: str):
    return _ensure_ok(await _blocking(_get_runtime().operations.delete_file, file_id))


@app.get("/v1/console/distribution")
async def get_distribution():
    progress = _get_runtime().distribution_progress()
    return progress.to_dict() if progress else None


@app.get("/v1/console/activity")
async def list_activity(limit: int = 20):
    notices = _get_runtime().activity.recent(limit=max(0, limit))
    return [
        {"message": notice.message, "level": notice.level, "createdAt": notice.created_at.isoformat()}
        for notice in notices
    ]


@app.get("/v1/console/activity/latest")
async def latest_notice():
    """The banner notice, or null once it has outlived its display window."""
    notice = _get_runtime().activity.latest()
    if notice is None:
        return None
    return {"message": notice.message, "level": notice.level, "createdAt": notice.created_at.isoformat()}
