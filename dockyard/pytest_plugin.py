"""pytest fixtures for tests that need throwaway containers.

Registered through the ``pytest11`` entry point, so installing the package is
enough to make the fixtures available.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

import pytest

from .container import DockerContainer
from .errors import DockerError
from .log_utils import logger
from .network import Network, SharedNetworkRegistry


@pytest.fixture(scope="session")
def dockyard_shared_network_registry() -> Iterator[SharedNetworkRegistry]:
    """Session-wide owner of the shared network; closes it when the session ends."""
    registry = SharedNetworkRegistry()
    yield registry
    registry.close()


@pytest.fixture(scope="session")
def dockyard_shared_network(dockyard_shared_network_registry: SharedNetworkRegistry) -> Network:
    return dockyard_shared_network_registry.get_or_create_shared()


@pytest.fixture
def docker_container_factory() -> Iterator[Callable[..., DockerContainer]]:
    """Build ``DockerContainer`` handles that are force-removed after the test.

    The factory takes the same arguments as ``DockerContainer`` and does not
    start the container.
    """
    created: list[DockerContainer] = []

    def _factory(image_or_spec: Any, **kwargs: Any) -> DockerContainer:
        container = DockerContainer(image_or_spec, **kwargs)
        created.append(container)
        return container

    yield _factory

    for container in reversed(created):
        try:
            container.remove(volumes=True, force=True)
        except DockerError as e:
            logger.warning(f"Failed to remove {container!r} during teardown: {e}")


__all__ = [
    "docker_container_factory",
    "dockyard_shared_network",
    "dockyard_shared_network_registry",
]
