"""Best-effort resolution of the address a started container is reachable at.

When the test process runs on the Docker host, a container is reached through
the daemon's host name and the host port the engine published. When the test
process itself runs inside a sibling container (detected by the
``/.dockerenv`` marker) that shares the default bridge with the target, the
published ports may not be routable and the bridge addresses are used
instead. This is a heuristic; ``TC_HOST`` always overrides it.
"""

from __future__ import annotations

from collections.abc import Mapping
import ipaddress
from pathlib import Path
import struct
from typing import Any
from urllib.parse import urlsplit

from .config import DockyardSettings
from .errors import PortNotMappedError
from .log_utils import logger


ROUTE_TABLE = Path("/proc/net/route")
LOCALHOST = "localhost"

_REMOTE_SCHEMES = frozenset({"http", "https", "tcp", "ssh"})
_SOCKET_SCHEMES = frozenset({"unix", "npipe", "http+unix", "http+docker"})


def inside_container(marker: Path) -> bool:
    """Return True when ``marker`` (normally ``/.dockerenv``) exists."""
    return marker.exists()


def default_gateway_ip(route_table: Path = ROUTE_TABLE) -> str | None:
    """Return the IPv4 default gateway from the kernel routing table, if any."""
    try:
        lines = route_table.read_text(encoding="ascii").splitlines()
    except OSError as e:
        logger.debug(f"Cannot read routing table {route_table}: {e}")
        return None

    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 3 or fields[1] != "00000000":
            continue
        try:
            packed = struct.pack("<L", int(fields[2], 16))
        except (ValueError, struct.error):
            continue
        return str(ipaddress.IPv4Address(packed))
    return None


def docker_host(base_url: str, settings: DockyardSettings, *, route_table: Path = ROUTE_TABLE) -> str | None:
    """Return the host name of the Docker daemon as seen from this process.

    Remote endpoints (``tcp://``, ``http://``) yield their host name. Local
    sockets yield the default gateway when running inside a container and
    None otherwise.
    """
    if settings.address.host_override:
        return settings.address.host_override
    parts = urlsplit(base_url)
    scheme = parts.scheme.lower()
    if scheme in _REMOTE_SCHEMES:
        return parts.hostname
    if scheme in _SOCKET_SCHEMES:
        if inside_container(settings.address.container_marker):
            return default_gateway_ip(route_table)
        return None
    return LOCALHOST


def bridge_network(info: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return ``NetworkSettings.Networks.bridge`` from an inspect document."""
    networks = (info.get("NetworkSettings") or {}).get("Networks") or {}
    return networks.get("bridge") or {}


def resolve_host(
    info: Mapping[str, Any],
    base_url: str,
    settings: DockyardSettings,
    *,
    route_table: Path = ROUTE_TABLE,
) -> str:
    """Return the host name or IP a caller should connect to.

    Args:
        info: The container's inspect document.
        base_url: Endpoint the Docker client is configured with.
        settings: Settings snapshot (``TC_HOST``, ``DOCKER_HOST``, marker path).
        route_table: Kernel routing table to read the default gateway from.
    """
    if settings.address.host_override:
        return settings.address.host_override

    host = docker_host(base_url, settings, route_table=route_table)
    if host is None:
        return LOCALHOST

    if inside_container(settings.address.container_marker) and not settings.engine.docker_host:
        bridge = bridge_network(info)
        gateway = bridge.get("Gateway") or None
        if gateway == host:
            return bridge.get("IPAddress") or host
        if gateway:
            return gateway
    return host


def host_port(info: Mapping[str, Any], port: str) -> str | None:
    """Return the published host port for canonical ``port``, or None."""
    ports = (info.get("NetworkSettings") or {}).get("Ports") or {}
    bindings = ports.get(port) or []
    if not bindings:
        return None
    return bindings[0].get("HostPort") or None


def resolve_mapped_port(
    info: Mapping[str, Any],
    port: str,
    base_url: str,
    settings: DockyardSettings,
    *,
    route_table: Path = ROUTE_TABLE,
) -> int:
    """Return the port to connect to for canonical container ``port``.

    Inside a container on the daemon's bridge the container port itself is
    returned, since no host-side remapping applies there.

    Raises:
        PortNotMappedError: If the engine published no host port for ``port``.
    """
    published = host_port(info, port)
    if published is None:
        raise PortNotMappedError(f"Port {port} is not mapped.")

    if not settings.address.host_override and inside_container(settings.address.container_marker):
        gateway = bridge_network(info).get("Gateway") or None
        if gateway is not None and gateway == docker_host(base_url, settings, route_table=route_table):
            return int(port.partition("/")[0])
    return int(published)


__all__ = [
    "bridge_network",
    "default_gateway_ip",
    "docker_host",
    "host_port",
    "inside_container",
    "resolve_host",
    "resolve_mapped_port",
]
