"""Host port availability and automatic assignment."""

from __future__ import annotations

import socket

from pydantic import BaseModel

from unideploy.logging import get_logger
from unideploy.pipeline.container import ContainerRuntime

AUTO_ASSIGN_RANGE = 100

logger = get_logger(__name__)


class PortResolution(BaseModel):
    """Port chosen for a deployment.

    Attributes:
        requested: Port from the deployment document
        port: Port to use, None when nothing is free
        reassigned: Whether a different port was picked
        owner: Container holding the requested port, if known
    """

    requested: int
    port: int | None
    reassigned: bool = False
    owner: str | None = None


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """True when nothing listens on ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start: int, end: int, host: str = "0.0.0.0") -> int | None:
    """First free port in ``[start, end]``."""
    for port in range(start, min(end, 65535) + 1):
        if is_port_available(port, host):
            return port
    return None


async def resolve_port(
    app_name: str,
    port: int,
    runtime: ContainerRuntime | None = None,
    auto_assign: bool = True,
) -> PortResolution:
    """Pick the port a deployment will publish.

    The requested port is kept when it is free or published by a container
    of the same app, which the new deployment replaces. Otherwise, with
    ``auto_assign``, the next free port in ``[port+1, port+100]`` is used.
    """
    if is_port_available(port):
        return PortResolution(requested=port, port=port)

    owner = await runtime.port_owner(port) if runtime is not None else None
    if owner is not None and owner.startswith(f"{app_name}-"):
        logger.debug("port_held_by_previous_deployment", port=port, container=owner)
        return PortResolution(requested=port, port=port, owner=owner)

    if not auto_assign:
        logger.error("port_in_use", port=port, owner=owner)
        return PortResolution(requested=port, port=None, owner=owner)

    alternative = find_available_port(port + 1, port + AUTO_ASSIGN_RANGE)
    if alternative is None:
        logger.error("no_free_port", requested=port, searched=AUTO_ASSIGN_RANGE)
    else:
        logger.warning("port_reassigned", requested=port, port=alternative, owner=owner)
    return PortResolution(
        requested=port,
        port=alternative,
        reassigned=alternative is not None,
        owner=owner,
    )
