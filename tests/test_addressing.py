"""Tests for host and port resolution, on the host and inside a sibling container."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from dockyard.addressing import (
    default_gateway_ip,
    docker_host,
    inside_container,
    resolve_host,
    resolve_mapped_port,
)
from dockyard.config import DockyardSettings
from dockyard.errors import PortNotMappedError


SOCKET_URL = "http+unix:///var/run/docker.sock"

# Default route via 172.17.0.1 (little-endian hex as the kernel prints it).
ROUTE_TABLE = """\
Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\t\tMTU\tWindow\tIRTT
eth0\t00000000\t010011AC\t0003\t0\t0\t0\t00000000\t0\t0\t0
eth0\t000011AC\t00000000\t0001\t0\t0\t0\t0000FFFF\t0\t0\t0
"""


def _info(
    *,
    ports: dict[str, Any] | None = None,
    gateway: str = "172.17.0.1",
    ip_address: str = "172.17.0.3",
) -> dict[str, Any]:
    return {
        "NetworkSettings": {
            "Ports": ports if ports is not None else {"6379/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}]},
            "Networks": {"bridge": {"Gateway": gateway, "IPAddress": ip_address}},
        }
    }


@pytest.fixture
def route_table(tmp_path: Path) -> Path:
    path = tmp_path / "route"
    path.write_text(ROUTE_TABLE, encoding="ascii")
    return path


@pytest.fixture
def marker(tmp_path: Path) -> Path:
    path = tmp_path / ".dockerenv"
    path.touch()
    return path


def test_inside_container_checks_marker(tmp_path: Path, marker: Path) -> None:
    assert inside_container(marker)
    assert not inside_container(tmp_path / "absent")


def test_default_gateway_ip_parses_route_table(route_table: Path) -> None:
    assert default_gateway_ip(route_table) == "172.17.0.1"


def test_default_gateway_ip_missing_table(tmp_path: Path) -> None:
    assert default_gateway_ip(tmp_path / "absent") is None


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("tcp://10.0.0.2:2375", "10.0.0.2"),
        ("https://docker.example.com:2376", "docker.example.com"),
        (SOCKET_URL, None),
        ("unix:///var/run/docker.sock", None),
        ("weird://thing", "localhost"),
    ],
)
def test_docker_host_on_the_host(
    url: str, expected: str | None, make_settings: Callable[..., DockyardSettings]
) -> None:
    assert docker_host(url, make_settings()) == expected


def test_docker_host_uses_gateway_inside_container(
    marker: Path, route_table: Path, make_settings: Callable[..., DockyardSettings]
) -> None:
    settings = make_settings(container_marker=marker)

    assert docker_host(SOCKET_URL, settings, route_table=route_table) == "172.17.0.1"


def test_host_override_always_wins(
    marker: Path, route_table: Path, make_settings: Callable[..., DockyardSettings]
) -> None:
    settings = make_settings(host_override="my-docker-host", container_marker=marker)

    assert resolve_host(_info(), SOCKET_URL, settings, route_table=route_table) == "my-docker-host"
    assert resolve_mapped_port(_info(), "6379/tcp", SOCKET_URL, settings, route_table=route_table) == 49153


def test_local_socket_resolves_to_localhost(make_settings: Callable[..., DockyardSettings]) -> None:
    settings = make_settings()

    assert resolve_host(_info(), SOCKET_URL, settings) == "localhost"
    assert resolve_mapped_port(_info(), "6379/tcp", SOCKET_URL, settings) == 49153


def test_remote_daemon_host_is_used(make_settings: Callable[..., DockyardSettings]) -> None:
    settings = make_settings(docker_host="tcp://10.0.0.2:2375")

    assert resolve_host(_info(), "tcp://10.0.0.2:2375", settings) == "10.0.0.2"


def test_sibling_container_on_shared_bridge_uses_peer_address(
    marker: Path, route_table: Path, make_settings: Callable[..., DockyardSettings]
) -> None:
    settings = make_settings(container_marker=marker)

    host = resolve_host(_info(), SOCKET_URL, settings, route_table=route_table)
    port = resolve_mapped_port(_info(), "6379/tcp", SOCKET_URL, settings, route_table=route_table)

    assert host == "172.17.0.3"
    assert port == 6379


def test_sibling_container_on_other_gateway_uses_that_gateway(
    marker: Path, route_table: Path, make_settings: Callable[..., DockyardSettings]
) -> None:
    settings = make_settings(container_marker=marker)
    info = _info(gateway="172.18.0.1", ip_address="172.18.0.7")

    assert resolve_host(info, SOCKET_URL, settings, route_table=route_table) == "172.18.0.1"
    assert resolve_mapped_port(info, "6379/tcp", SOCKET_URL, settings, route_table=route_table) == 49153


def test_docker_host_env_disables_bridge_heuristic(
    marker: Path, route_table: Path, make_settings: Callable[..., DockyardSettings]
) -> None:
    settings = make_settings(container_marker=marker, docker_host="tcp://172.17.0.1:2375")

    host = resolve_host(_info(), "tcp://172.17.0.1:2375", settings, route_table=route_table)

    assert host == "172.17.0.1"


@pytest.mark.parametrize("ports", [{}, {"6379/tcp": None}, {"6379/tcp": []}])
def test_unmapped_port_raises(ports: dict[str, Any], make_settings: Callable[..., DockyardSettings]) -> None:
    with pytest.raises(PortNotMappedError, match="6379/tcp"):
        resolve_mapped_port(_info(ports=ports), "6379/tcp", SOCKET_URL, make_settings())
