"""Exception hierarchy for dockyard.

Every failure coming out of the Docker engine is reclassified into one of these
types by ``sdk.translate_engine_errors``; callers never see raw ``docker`` or
``requests`` exceptions.
"""

from __future__ import annotations


class DockerError(Exception):
    """Base class for every error raised by dockyard."""


class EngineConnectionError(DockerError, ConnectionError):
    """The Docker daemon could not be reached."""


class EngineError(DockerError):
    """The Docker daemon answered with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(EngineError):
    """The requested engine resource does not exist."""


class ImageNotFoundError(NotFoundError):
    """The declared image could not be resolved or pulled."""


class ContainerNotStartedError(DockerError):
    """The operation needs a created container and there is none."""

    def __init__(self, message: str = "Container has not been started.") -> None:
        super().__init__(message)


class HealthcheckNotSupportedError(DockerError):
    """The container does not declare a health check."""

    def __init__(self, message: str = "Container does not declare a health check.") -> None:
        super().__init__(message)


class PortNotMappedError(DockerError):
    """The requested container port was never exposed or bound."""


class WaitTimeoutError(DockerError, TimeoutError):
    """A wait strategy deadline elapsed before the container was ready."""


class InvalidArgumentError(DockerError, ValueError):
    """Malformed builder input."""


class InvalidStateError(DockerError):
    """The handle is in a lifecycle state that forbids the operation."""


class NetworkAlreadyExistsError(EngineError):
    """A network with the requested name already exists."""


class NetworkInUseError(EngineError):
    """The network still has containers attached."""


class FileTransferError(DockerError):
    """Copying a file into or out of a container failed."""


__all__ = [
    "DockerError",
    "EngineConnectionError",
    "EngineError",
    "NotFoundError",
    "ImageNotFoundError",
    "ContainerNotStartedError",
    "HealthcheckNotSupportedError",
    "PortNotMappedError",
    "WaitTimeoutError",
    "InvalidArgumentError",
    "InvalidStateError",
    "NetworkAlreadyExistsError",
    "NetworkInUseError",
    "FileTransferError",
]
