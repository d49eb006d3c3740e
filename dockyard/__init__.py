"""Throwaway Docker containers and networks for integration tests.

This package provides structured helpers for:
    * Describing a container declaratively (``ContainerSpec``) and driving its
        lifecycle (``DockerContainer``: start, stop, kill, restart, remove).
    * Blocking until a started container is ready (log match, TCP port, HTTP
        status, engine health check, or a custom callback).
    * Creating and tearing down networks, including one shared network per
        test process (``Network`` / ``SharedNetworkRegistry``).
    * Resolving where a container is reachable from the test process
        (``DockerContainer.host`` / ``DockerContainer.mapped_port``).

Principles:
    * Keep low-level SDK usage encapsulated (see ``sdk.py``) so higher-level
        code can be easily mocked in tests.
    * No client construction until a container or network needs one.
    * Every engine failure surfaces as a ``DockerError`` subclass.

Public API (re-exported):
        - ContainerSpec
        - DockerContainer, ContainerState, ExecResult
        - Network, SharedNetworkRegistry
        - LogMatch, TcpPort, Http, Healthcheck, Callback
        - DockerClientProvider, connection
        - get_settings
        - DockerError and its subclasses
"""

from .config import DockyardSettings, get_settings
from .container import ContainerState, DockerContainer, ExecResult
from .errors import (
    ContainerNotStartedError,
    DockerError,
    EngineConnectionError,
    EngineError,
    FileTransferError,
    HealthcheckNotSupportedError,
    ImageNotFoundError,
    InvalidArgumentError,
    InvalidStateError,
    NetworkAlreadyExistsError,
    NetworkInUseError,
    NotFoundError,
    PortNotMappedError,
    WaitTimeoutError,
)
from .network import Network, SharedNetworkRegistry
from .sdk import DockerClientProvider, connection
from .spec import ContainerSpec
from .version import __version__
from .waits import Callback, Healthcheck, Http, LogMatch, TcpPort


__all__ = [
    "__version__",
    "Callback",
    "ContainerNotStartedError",
    "ContainerSpec",
    "ContainerState",
    "DockerClientProvider",
    "DockerContainer",
    "DockerError",
    "DockyardSettings",
    "EngineConnectionError",
    "EngineError",
    "ExecResult",
    "FileTransferError",
    "Healthcheck",
    "HealthcheckNotSupportedError",
    "Http",
    "ImageNotFoundError",
    "InvalidArgumentError",
    "InvalidStateError",
    "LogMatch",
    "Network",
    "NetworkAlreadyExistsError",
    "NetworkInUseError",
    "NotFoundError",
    "PortNotMappedError",
    "SharedNetworkRegistry",
    "TcpPort",
    "WaitTimeoutError",
    "connection",
    "get_settings",
]
