"""HTTP client for the storage backend the console orchestrates."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import requests
from pydantic import BaseModel, ConfigDict, Field

from ..config import BackendConfig
from ..models import ChunkAssignment, Distribution, FileRecord, NetworkStatus, NodeRecord, StartDecision

_LOGGER = logging.getLogger("storage_console.clients.network_client")


class _CamelAliasModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NodePayload(_CamelAliasModel):
    node_id: str = Field(alias="nodeId")
    host: str = "localhost"
    port: Optional[int] = None
    address: Optional[str] = None

    def to_record(self) -> NodeRecord:
        return NodeRecord(node_id=self.node_id, port=self.port, host=self.host, address=self.address)


class RunningNodesPayload(_CamelAliasModel):
    running_nodes: List[str] = Field(default_factory=list, alias="runningNodes")
    count: int = 0


class FilePayload(_CamelAliasModel):
    id: str
    file_name: str = Field(alias="fileName")
    size_bytes: int = Field(default=0, alias="sizeBytes")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    storage_node_hint: Optional[str] = Field(default=None, alias="storageNodeHint")

    def to_record(self) -> FileRecord:
        return FileRecord(
            file_id=self.id,
            file_name=self.file_name,
            size_bytes=self.size_bytes,
            uploaded_at=self.created_at,
            storage_hint=self.storage_node_hint,
        )


class NetworkStatusPayload(_CamelAliasModel):
    total_nodes: int = Field(default=0, alias="totalNodes")
    total_storage_bytes: int = Field(default=0, alias="totalStorageBytes")
    used_storage_bytes: int = Field(default=0, alias="usedStorageBytes")
    utilization_percent: float = Field(default=0.0, alias="utilizationPercent")
    total_chunks: int = Field(default=0, alias="totalChunks")

    def to_status(self) -> NetworkStatus:
        return NetworkStatus(**self.model_dump())


class ChunkInfoPayload(_CamelAliasModel):
    chunk_index: int = Field(alias="chunkIndex")
    node_id: str = Field(alias="nodeId")
    size_bytes: int = Field(default=0, alias="sizeBytes")


class DistributionPayload(_CamelAliasModel):
    file_id: str = Field(alias="fileId")
    file_name: str = Field(default="", alias="fileName")
    total_chunks: int = Field(default=0, alias="totalChunks")
    distribution: List[ChunkInfoPayload] = Field(default_factory=list)

    def to_distribution(self) -> Distribution:
        return Distribution(
            file_id=self.file_id,
            file_name=self.file_name,
            assignments=tuple(
                ChunkAssignment(chunk_index=item.chunk_index, node_id=item.node_id, size_bytes=item.size_bytes)
                for item in self.distribution
            ),
        )


class BackendRequestError(RuntimeError):
    """Non-success response for a call that has no structured rejection."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


@dataclass
class StorageNetworkClient:
    """Collaborator calls against the storage backend REST API.

    Query methods raise on transport errors and non-success responses; the
    callers decide whether that is transient. ``request_node_start`` turns a
    non-success response into a rejected :class:`StartDecision`.
    """

    base_url: str
    token: Optional[str] = None
    timeout: float = 5.0
    http_client: Any = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, config: BackendConfig, http_client: Any = None) -> "StorageNetworkClient":
        client = cls(base_url=config.base_url, token=config.token, timeout=config.timeout_seconds)
        if http_client is not None:
            client.http_client = http_client
        return client

    def _url(self, suffix: str) -> str:
        base = self.base_url.rstrip("/")
        return f"{base}{suffix}"

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _get(self, suffix: str) -> Any:
        response = self.http_client.get(self._url(suffix), headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def _send(self, method: str, suffix: str, **kwargs: Any) -> Any:
        call = getattr(self.http_client, method)
        response = call(self._url(suffix), headers=self._headers(), timeout=self.timeout, **kwargs)
        if not response.ok:
            raise BackendRequestError(response.status_code, _error_message(response))
        return _json_or_empty(response)

    # Node lifecycle -----------------------------------------------------

    def request_node_start(self, node_id: str, port: int, storage_gb: int, ram_gb: int) -> StartDecision:
        payload = {"nodeId": node_id, "port": port, "storageGB": storage_gb, "ramGB": ram_gb}
        response = self.http_client.post(
            self._url("/network/nodes/start"),
            json=payload,
            headers=self._headers(),
            timeout=self.timeout,
        )
        if response.ok:
            return StartDecision(accepted=True)
        reason = _error_message(response)
        _LOGGER.warning("Start request for %s rejected (%s): %s", node_id, response.status_code, reason)
        return StartDecision(accepted=False, reason=reason)

    def stop_node(self, node_id: str) -> Dict[str, Any]:
        return self._send("post", f"/network/nodes/stop/{node_id}")

    def restart_node(self, node_id: str, port: int, storage_gb: int, ram_gb: int) -> Dict[str, Any]:
        payload = {"port": port, "storageGB": storage_gb, "ramGB": ram_gb}
        return self._send("post", f"/network/nodes/restart/{node_id}", json=payload)

    def delete_node(self, node_id: str) -> Dict[str, Any]:
        return self._send("delete", f"/network/nodes/{node_id}")

    def delete_all_nodes(self) -> Dict[str, Any]:
        return self._send("post", "/network/nodes/delete-all")

    # Authoritative collections -----------------------------------------

    def query_running_set(self) -> Set[str]:
        payload = RunningNodesPayload.model_validate(self._get("/network/nodes/running"))
        return set(payload.running_nodes)

    def query_nodes(self) -> List[NodeRecord]:
        return [NodePayload.model_validate(item).to_record() for item in self._get("/network/nodes")]

    def query_files(self) -> List[FileRecord]:
        return [FilePayload.model_validate(item).to_record() for item in self._get("/user/dashboard/files")]

    def query_network_status(self) -> NetworkStatus:
        return NetworkStatusPayload.model_validate(self._get("/network/status")).to_status()

    # Files ----------------------------------------------------------------

    def request_file_upload(self, file_name: str, data: bytes) -> str:
        result = self._send("post", "/files/upload", files={"file": (file_name, data)})
        file_id = result.get("id") if isinstance(result, dict) else None
        if not file_id:
            raise BackendRequestError(200, "upload response did not include a file id")
        return str(file_id)

    def query_distribution(self, file_id: str) -> Distribution:
        payload = DistributionPayload.model_validate(self._get(f"/user/dashboard/files/{file_id}/distribution"))
        return payload.to_distribution()

    def delete_file(self, file_id: str) -> Dict[str, Any]:
        return self._send("delete", f"/files/{file_id}")


def _json_or_empty(response: Any) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _error_message(response: Any) -> str:
    body = _json_or_empty(response)
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return "Unknown error"
