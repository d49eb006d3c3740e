"""Docker networks: idempotent create/close and the per-process shared network."""

from __future__ import annotations

import atexit
from collections.abc import Callable, Mapping
import threading
from typing import Any
import uuid

from .errors import DockerError, EngineError, NetworkAlreadyExistsError, NetworkInUseError, NotFoundError
from .log_utils import logger
from .sdk import DockerClientProvider, get_provider, translate_engine_errors


DEFAULT_DRIVER = "bridge"
NETWORK_NAME_PREFIX = "testcontainers-network"
SHARED_NAME_PREFIX = "testcontainers-shared-network"

_IN_USE_MARKERS = ("active endpoints", "in use")


def _is_in_use(error: EngineError) -> bool:
    message = str(error).lower()
    return error.status_code in (403, 409) and any(marker in message for marker in _IN_USE_MARKERS)


class Network:
    """Handle for one engine-side network.

    ``create()`` and ``close()`` are serialized by a lock because several
    owners (fixtures, containers, the exit hook) may race on the same handle.
    A shared network ignores ``close()`` unless ``force=True``.
    """

    def __init__(
        self,
        name: str | None = None,
        driver: str = DEFAULT_DRIVER,
        options: Mapping[str, str] | None = None,
        *,
        shared: bool = False,
        provider: DockerClientProvider | None = None,
    ) -> None:
        self.name = name or self.generate_name()
        self.driver = driver
        self.options = dict(options or {})
        self.shared = shared
        self._provider = provider or get_provider()
        self._docker_network: Any = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Network(name={self.name!r}, driver={self.driver!r}, shared={self.shared})"

    @staticmethod
    def generate_name() -> str:
        return f"{NETWORK_NAME_PREFIX}-{uuid.uuid4()}"

    @classmethod
    def new_network(
        cls,
        name: str | None = None,
        driver: str = DEFAULT_DRIVER,
        options: Mapping[str, str] | None = None,
        *,
        provider: DockerClientProvider | None = None,
    ) -> Network:
        """Build a network and create it on the engine in one step."""
        network = cls(name, driver, options, provider=provider)
        network.create()
        return network

    @property
    def is_created(self) -> bool:
        return self._docker_network is not None

    @property
    def id(self) -> str | None:
        return getattr(self._docker_network, "id", None)

    def create(self) -> Any:
        """Create the network unless this handle already did.

        Returns:
            The Docker SDK network object.

        Raises:
            NetworkAlreadyExistsError: If another network already uses the name.
            EngineConnectionError: If the Docker daemon is unreachable.
        """
        with self._lock:
            if self._docker_network is not None:
                return self._docker_network
            client = self._provider.connection()
            try:
                with translate_engine_errors(f"create network {self.name}"):
                    self._docker_network = client.networks.create(
                        self.name,
                        driver=self.driver,
                        options=self.options or None,
                        check_duplicate=True,
                    )
            except EngineError as e:
                if e.status_code == 409:
                    raise NetworkAlreadyExistsError(
                        f"Network {self.name!r} already exists.", e.status_code
                    ) from e
                raise
            logger.info(f"Created network {self.name} ({self.driver})")
            return self._docker_network

    @property
    def docker_network(self) -> Any:
        """The Docker SDK network object, creating the network on first access."""
        return self.create()

    def info(self) -> dict[str, Any]:
        """Return the engine's inspect document for the network."""
        network = self.docker_network
        with translate_engine_errors(f"inspect network {self.name}"):
            network.reload()
        return network.attrs

    def close(self, force: bool = False) -> Network:
        """Remove the network from the engine.

        A network that is already gone counts as removed. The shared network
        is left alone unless ``force`` is set.

        Raises:
            NetworkInUseError: If containers are still attached. The handle
                stays usable so the caller can retry after detaching them.
        """
        if self.shared and not force:
            logger.debug(f"Keeping shared network {self.name}")
            return self

        with self._lock:
            network = self._docker_network
            if network is None:
                return self
            try:
                with translate_engine_errors(f"remove network {self.name}"):
                    network.remove()
            except NotFoundError:
                logger.debug(f"Network {self.name} was already removed")
            except EngineError as e:
                if _is_in_use(e):
                    raise NetworkInUseError(
                        f"Network {self.name!r} is still in use.", e.status_code
                    ) from e
                raise
            else:
                logger.info(f"Removed network {self.name}")
            self._docker_network = None
        return self

    def force_close(self) -> Network:
        return self.close(force=True)


class SharedNetworkRegistry:
    """Owns the single shared network of a test process.

    The first ``get_or_create_shared()`` call builds the network under a
    process-unique name and registers exactly one exit hook that force-closes
    it, however many times the accessor is called afterwards.
    """

    def __init__(
        self,
        *,
        provider: DockerClientProvider | None = None,
        register_exit: Callable[[Callable[[], Any]], Any] = atexit.register,
    ) -> None:
        self._provider = provider
        self._register_exit = register_exit
        self._network: Network | None = None
        self._cleanup_registered = False
        self._lock = threading.Lock()

    @property
    def network(self) -> Network | None:
        return self._network

    def get_or_create_shared(self) -> Network:
        with self._lock:
            if self._network is None:
                self._network = Network(
                    f"{SHARED_NAME_PREFIX}-{uuid.uuid4()}",
                    shared=True,
                    provider=self._provider,
                )
            if not self._cleanup_registered:
                self._register_exit(self._close_at_exit)
                self._cleanup_registered = True
            network = self._network
        network.create()
        return network

    def close(self) -> None:
        """Force-close the shared network if it was ever created."""
        with self._lock:
            network = self._network
        if network is not None:
            network.force_close()

    def _close_at_exit(self) -> None:
        try:
            self.close()
        except DockerError as e:
            logger.warning(f"Could not remove shared network at exit: {e}")


__all__ = ["DEFAULT_DRIVER", "Network", "SharedNetworkRegistry"]
