"""Port selection for newly provisioned nodes."""

from __future__ import annotations

from typing import Iterable, Optional

DEFAULT_BASE_PORT = 50051


def allocate_port(existing_ports: Iterable[Optional[int]], start_from: int = DEFAULT_BASE_PORT) -> int:
    """Return the smallest port >= ``start_from`` that is not in ``existing_ports``.

    Callers pass the union of ports held by known nodes and by in-flight
    lifecycle entries so two concurrent provisioning requests never share one.
    """
    used = {port for port in existing_ports if port is not None}
    port = start_from
    while port in used:
        port += 1
    return port
