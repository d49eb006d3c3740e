"""Container lifecycle: create, start, wait for readiness, inspect, stop and remove."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
import contextlib
from dataclasses import dataclass
from enum import Enum
import io
import os
from pathlib import Path, PurePosixPath
import tarfile
import time
from types import TracebackType
from typing import Any, BinaryIO, Pattern

import docker
from docker.constants import DEFAULT_DATA_CHUNK_SIZE
from docker.utils import parse_repository_tag
import requests

from . import waits
from .addressing import resolve_host, resolve_mapped_port
from .config import DockyardSettings
from .errors import (
    ContainerNotStartedError,
    EngineConnectionError,
    EngineError,
    FileTransferError,
    HealthcheckNotSupportedError,
    ImageNotFoundError,
    InvalidStateError,
    NotFoundError,
    PortNotMappedError,
)
from .log_utils import container_prefix, log_multiline, logger
from .sdk import DockerClientProvider, get_provider, translate_engine_errors
from .spec import ContainerSpec, normalize_port


# Pull failures the registry reports without a 404.
_MISSING_IMAGE_MARKERS = ("pull access denied", "manifest unknown", "not found", "does not exist")


class ContainerState(str, Enum):
    """Coarse lifecycle stage of a handle, tracked without asking the engine."""

    UNBOUND = "unbound"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


@dataclass(slots=True)
class ExecResult:
    """Captured output of a command run with ``DockerContainer.exec``."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes | bytearray):
        return data.decode("utf-8", errors="replace")
    return str(data)


def _raise_for_engine_status(response: requests.Response) -> None:
    """Turn an HTTP error status into the matching ``docker.errors`` exception."""
    try:
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        docker.errors.create_api_error_from_http_exception(e)


def _declares_healthcheck(info: Mapping[str, Any]) -> bool:
    healthcheck = (info.get("Config") or {}).get("Healthcheck")
    if not healthcheck:
        return False
    return healthcheck.get("Test") != ["NONE"]


class DockerContainer:
    """Handle owning one engine-side container.

    The handle is built from a ``ContainerSpec`` (or an image name plus spec
    keyword arguments). ``start()`` pulls the image when needed, creates and
    starts the container, then blocks on the wait strategy configured on it. When
    that strategy times out the container is left running; cleaning it up is the
    caller's job (``remove(force=True)``, or use the handle as a context
    manager with ``remove_on_exit=True``).

    Handles are not thread-safe; share one across threads only with external
    locking.

    Example:
        >>> with DockerContainer("redis:7", exposed_ports=[6379]).with_wait_for() as redis:
        ...     port = redis.mapped_port(6379)
    """

    def __init__(
        self,
        image_or_spec: str | ContainerSpec,
        *,
        provider: DockerClientProvider | None = None,
        remove_on_exit: bool = False,
        **spec_kwargs: Any,
    ) -> None:
        if isinstance(image_or_spec, ContainerSpec):
            if spec_kwargs:
                raise TypeError("Spec keyword arguments cannot be combined with a ContainerSpec")
            self.spec = image_or_spec
        else:
            self.spec = ContainerSpec(image_or_spec, **spec_kwargs)
        self.remove_on_exit = remove_on_exit
        self._provider = provider or get_provider()
        self._container: Any = None
        self._id: str | None = None
        self._name: str | None = None
        self._created_at: str | None = None
        self._state = ContainerState.UNBOUND

    def __repr__(self) -> str:
        return f"DockerContainer(image={self.image!r}, id={self.short_id!r}, state={self._state.value})"

    # -- identity ---------------------------------------------------------

    @property
    def image(self) -> str:
        return self.spec.image

    @property
    def id(self) -> str | None:
        return self._id

    @property
    def short_id(self) -> str | None:
        return self._id[:12] if self._id else None

    @property
    def name(self) -> str | None:
        return self._name or self.spec.name

    @property
    def created_at(self) -> str | None:
        """Engine creation timestamp (ISO 8601, UTC), once started."""
        return self._created_at

    @property
    def state(self) -> ContainerState:
        """Last lifecycle transition issued through this handle.

        Use ``status()`` for the engine's live view.
        """
        return self._state

    @property
    def settings(self) -> DockyardSettings:
        return self._provider.settings

    def _label(self) -> str:
        return container_prefix(self.name, self._id) or f"[{self.image}]"

    def _require_container(self) -> Any:
        if self._container is None:
            raise ContainerNotStartedError()
        return self._container

    # -- fluent configuration (delegated to ContainerSpec) ----------------

    def with_name(self, name: str) -> DockerContainer:
        self.spec.with_name(name)
        return self

    def with_command(self, *parts: Any) -> DockerContainer:
        self.spec.with_command(*parts)
        return self

    def with_entrypoint(self, *parts: Any) -> DockerContainer:
        self.spec.with_entrypoint(*parts)
        return self

    def with_env(self, env_or_key: Any, value: str | None = None) -> DockerContainer:
        self.spec.with_env(env_or_key, value)
        return self

    def with_exposed_ports(self, *ports: Any) -> DockerContainer:
        self.spec.with_exposed_ports(*ports)
        return self

    def with_fixed_exposed_port(self, container_port: Any, host_port: int | str | None = None) -> DockerContainer:
        self.spec.with_fixed_exposed_port(container_port, host_port)
        return self

    def with_volumes(self, volumes: Any) -> DockerContainer:
        self.spec.with_volumes(volumes)
        return self

    def with_filesystem_binds(self, binds: Any) -> DockerContainer:
        self.spec.with_filesystem_binds(binds)
        return self

    def with_labels(self, labels: Mapping[str, str]) -> DockerContainer:
        self.spec.with_labels(labels)
        return self

    def with_healthcheck(self, test: Any = None, **options: Any) -> DockerContainer:
        self.spec.with_healthcheck(test, **options)
        return self

    def with_wait_for(self, *args: Any, **kwargs: Any) -> DockerContainer:
        self.spec.with_wait_for(*args, **kwargs)
        return self

    def with_network(self, network: Any) -> DockerContainer:
        self.spec.with_network(network)
        return self

    def with_network_aliases(self, *aliases: str) -> DockerContainer:
        self.spec.with_network_aliases(*aliases)
        return self

    def with_options(self, options: Mapping[str, Any] | None = None, **kwargs: Any) -> DockerContainer:
        self.spec.with_options(options, **kwargs)
        return self

    def get_env(self, key: str) -> str | None:
        return self.spec.get_env(key)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> DockerContainer:
        """Create (once) and start the container, then block until it is ready.

        Returns:
            DockerContainer: ``self``.

        Raises:
            InvalidStateError: If the handle was already removed.
            ImageNotFoundError: If the image is neither cached nor pullable.
            EngineConnectionError: If the Docker daemon is unreachable.
            WaitTimeoutError: If the wait strategy never succeeds. The
                container is left running in that case.
        """
        if self._state is ContainerState.REMOVED:
            raise InvalidStateError(f"Container {self._label()} was removed; build a new handle to start again.")

        client = self._provider.connection()
        if self._container is None:
            self._ensure_image(client)
            self._ensure_network()
            self._create(client)
        elif self._inspect().get("State", {}).get("Status") == "running":
            logger.debug(f"{self._label()} is already running")
            return self

        started_at = time.monotonic()
        with translate_engine_errors(f"start container {self._label()}"):
            self._container.start()
        info = self._inspect()
        self._name = (info.get("Name") or "").lstrip("/") or self.spec.name
        self._created_at = info.get("Created")
        self._state = ContainerState.RUNNING
        logger.info(f"Started {self._label()} from {self.image}")

        self._await_readiness()
        logger.debug(f"{self._label()} ready after {time.monotonic() - started_at:.2f}s")
        return self

    def _ensure_image(self, client: Any) -> None:
        try:
            with translate_engine_errors(f"inspect image {self.image}"):
                client.images.get(self.image)
            return
        except NotFoundError:
            pass

        options = dict(self.spec.image_create_options)
        repository, tag = parse_repository_tag(self.image)
        tag = options.pop("tag", None) or tag or "latest"
        logger.info(f"Pulling image {repository}:{tag}")
        try:
            with translate_engine_errors(f"pull image {self.image}"):
                client.images.pull(repository, tag=tag, **options)
        except NotFoundError as e:
            raise ImageNotFoundError(str(e), e.status_code) from e
        except EngineError as e:
            if any(marker in str(e).lower() for marker in _MISSING_IMAGE_MARKERS):
                raise ImageNotFoundError(str(e), e.status_code) from e
            raise

    def _ensure_network(self) -> None:
        network = self.spec.network
        if network is not None and not network.is_created:
            network.create()

    def _create(self, client: Any) -> None:
        payload = self.spec.create_payload()
        with translate_engine_errors(f"create container from {self.image}"):
            response = client.api.create_container_from_config(payload, name=self.spec.name)
            self._container = client.containers.get(response["Id"])
        for warning in response.get("Warnings") or []:
            logger.warning(f"Engine warning for {self.image}: {warning}")
        self._id = response["Id"]
        self._state = ContainerState.CREATED
        self.spec.freeze()
        logger.debug(f"Created {self._label()} from {self.image}")

    def _await_readiness(self) -> None:
        strategy = self.spec.wait_strategy
        if strategy is None:
            return
        if isinstance(strategy, waits.Callback):
            strategy.function(self)
        elif isinstance(strategy, waits.LogMatch):
            self.wait_for_logs(strategy.pattern, timeout=strategy.timeout, interval=strategy.interval)
        elif isinstance(strategy, waits.TcpPort):
            self.wait_for_tcp_port(strategy.port, timeout=strategy.timeout, interval=strategy.interval)
        elif isinstance(strategy, waits.Http):
            self.wait_for_http(
                path=strategy.path,
                container_port=strategy.container_port,
                https=strategy.https,
                status=strategy.status,
                timeout=strategy.timeout,
                interval=strategy.interval,
            )
        elif isinstance(strategy, waits.Healthcheck):
            self.wait_for_healthcheck(timeout=strategy.timeout, interval=strategy.interval)
        else:  # pragma: no cover - closed set of variants
            raise InvalidStateError(f"Unsupported wait strategy: {strategy!r}")

    def stop(self, force: bool = False, timeout: int = 10) -> DockerContainer:
        """Stop the container; ``force`` skips the grace period.

        Raises:
            ContainerNotStartedError: If the container was never created.
        """
        container = self._require_container()
        with translate_engine_errors(f"stop container {self._label()}"):
            container.stop(timeout=0 if force else timeout)
        self._state = ContainerState.STOPPED
        logger.info(f"Stopped {self._label()}")
        return self

    def kill(self, signal: str | int = "SIGKILL") -> DockerContainer:
        container = self._require_container()
        with translate_engine_errors(f"kill container {self._label()}"):
            container.kill(signal=signal)
        self._state = ContainerState.STOPPED
        logger.info(f"Sent {signal} to {self._label()}")
        return self

    def restart(self, timeout: int = 10) -> DockerContainer:
        container = self._require_container()
        with translate_engine_errors(f"restart container {self._label()}"):
            container.restart(timeout=timeout)
        self._state = ContainerState.RUNNING
        logger.info(f"Restarted {self._label()}")
        return self

    def remove(self, volumes: bool = False, force: bool = False) -> DockerContainer:
        """Remove the container and drop the local reference.

        Safe to call repeatedly, and on a handle that was never started.
        """
        container = self._container
        if container is None:
            return self
        try:
            with translate_engine_errors(f"remove container {self._label()}"):
                container.remove(v=volumes, force=force)
        except NotFoundError:
            logger.debug(f"{self._label()} was already removed")
        else:
            logger.info(f"Removed {self._label()}")
        self._container = None
        self._state = ContainerState.REMOVED
        return self

    def exists(self) -> bool:
        """Return whether the engine still knows this container."""
        if self._id is None:
            return False
        client = self._provider.connection()
        try:
            with translate_engine_errors(f"look up container {self._label()}"):
                client.containers.get(self._id)
        except NotFoundError:
            return False
        return True

    def __enter__(self) -> DockerContainer:
        return self.start()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._container is None:
            return
        try:
            self.stop()
        except NotFoundError:
            logger.debug(f"{self._label()} disappeared before it could be stopped")
        if self.remove_on_exit:
            self.remove(volumes=True, force=True)

    # -- inspection -------------------------------------------------------

    def _inspect(self) -> dict[str, Any]:
        container = self._require_container()
        with translate_engine_errors(f"inspect container {self._label()}"):
            container.reload()
        return container.attrs

    def info(self) -> dict[str, Any]:
        """Return the engine's inspect document for the container."""
        return self._inspect()

    def status(self) -> str:
        """Return the engine's live state string (``running``, ``exited``, ...)."""
        return self._inspect()["State"]["Status"]

    def is_running(self) -> bool:
        try:
            return self.status() == "running"
        except ContainerNotStartedError:
            return False

    def is_exited(self) -> bool:
        return self.status() == "exited"

    def is_dead(self) -> bool:
        return self.status() == "dead"

    def is_paused(self) -> bool:
        return self.status() == "paused"

    def is_restarting(self) -> bool:
        return self.status() == "restarting"

    def supports_healthcheck(self) -> bool:
        return _declares_healthcheck(self._inspect())

    def is_healthy(self) -> bool:
        """Return whether the engine reports the health check as healthy.

        Raises:
            HealthcheckNotSupportedError: If no health check is declared.
        """
        try:
            info = self._inspect()
        except ContainerNotStartedError:
            return False
        if not _declares_healthcheck(info):
            raise HealthcheckNotSupportedError()
        return ((info.get("State") or {}).get("Health") or {}).get("Status") == "healthy"

    def host(self) -> str:
        """Return the host name or IP to reach the container's published ports."""
        return resolve_host(self._inspect(), self._provider.base_url, self.settings)

    def mapped_port(self, port: int | str) -> int:
        """Return the port to connect to for container ``port``.

        Raises:
            ContainerNotStartedError: If the container was never created.
            PortNotMappedError: If ``port`` has no published mapping.
        """
        return resolve_mapped_port(
            self._inspect(), normalize_port(port), self._provider.base_url, self.settings
        )

    def first_mapped_port(self) -> int:
        ports = (self._inspect().get("NetworkSettings") or {}).get("Ports") or {}
        for port, bindings in ports.items():
            if bindings:
                return self.mapped_port(port)
        raise PortNotMappedError(f"{self._label()} has no mapped ports.")

    def mount_names(self) -> list[str]:
        """Return the names of the volumes mounted into the container."""
        mounts = self._inspect().get("Mounts") or []
        return [mount.get("Name") or mount.get("Destination") for mount in mounts]

    def logs(self, stdout: bool = True, stderr: bool = True) -> tuple[str, str]:
        """Return the container's ``(stdout, stderr)`` captured so far."""
        container = self._require_container()
        out = err = ""
        with translate_engine_errors(f"read logs of {self._label()}"):
            if stdout:
                out = _decode(container.logs(stdout=True, stderr=False))
            if stderr:
                err = _decode(container.logs(stdout=False, stderr=True))
        return out, err

    def exec(
        self,
        command: Sequence[str] | str,
        *,
        user: str = "",
        workdir: str | None = None,
        environment: Mapping[str, str] | None = None,
        privileged: bool = False,
        tty: bool = False,
    ) -> ExecResult:
        """Run ``command`` inside the container and capture its output.

        Raises:
            ContainerNotStartedError: If the container was never created.
            EngineError: If the engine refuses the exec (e.g. container stopped).
        """
        container = self._require_container()
        with translate_engine_errors(f"exec in {self._label()}"):
            result = container.exec_run(
                cmd=command,
                user=user,
                workdir=workdir,
                environment=dict(environment) if environment else None,
                privileged=privileged,
                tty=tty,
                demux=True,
            )
        output = result.output
        if isinstance(output, tuple):
            out_b, err_b = output
        else:
            out_b, err_b = output, None
        exec_result = ExecResult(stdout=_decode(out_b), stderr=_decode(err_b), exit_code=result.exit_code)
        log_multiline(exec_result.stdout, self._label(), level="debug")
        log_multiline(exec_result.stderr, self._label(), level="debug")
        return exec_result

    # -- file transfer ----------------------------------------------------

    def _require_running(self) -> Any:
        container = self._require_container()
        if not self.is_running():
            raise ContainerNotStartedError(f"Container {self._label()} is not running.")
        return container

    def copy_file_to_container(self, container_path: str, source: bytes | str | os.PathLike[str] | BinaryIO) -> DockerContainer:
        """Write ``source`` to ``container_path`` inside the running container.

        ``source`` is either the content itself (``bytes``/``str``), a host
        path (``pathlib.Path`` or other path-like) or a binary file object.

        Raises:
            ContainerNotStartedError: If the container is not running.
            FileTransferError: If reading the source or writing the archive fails.
        """
        container = self._require_running()
        target = PurePosixPath(container_path)
        try:
            if isinstance(source, bytes):
                content = source
            elif isinstance(source, str):
                content = source.encode("utf-8")
            elif isinstance(source, os.PathLike):
                content = Path(source).read_bytes()
            else:
                content = source.read()
        except OSError as e:
            raise FileTransferError(f"Cannot read source for {container_path}: {e}") from e

        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            member = tarfile.TarInfo(name=target.name)
            member.size = len(content)
            member.mode = 0o644
            member.mtime = int(time.time())
            archive.addfile(member, io.BytesIO(content))

        try:
            with translate_engine_errors(f"copy {container_path} into {self._label()}"):
                accepted = container.put_archive(str(target.parent), buffer.getvalue())
        except EngineError as e:
            raise FileTransferError(str(e)) from e
        if not accepted:
            raise FileTransferError(f"Engine rejected the archive for {container_path}")
        logger.debug(f"Copied {len(content)} bytes to {self._label()}:{container_path}")
        return self

    def copy_file_from_container(
        self, container_path: str, destination: str | os.PathLike[str] | BinaryIO | None = None
    ) -> bytes:
        """Read ``container_path`` out of the running container.

        When ``destination`` is a path or a binary file object the content is
        also written there. The content is always returned.

        The archive is read from a streamed engine response that is closed on
        every exit path.

        Raises:
            ContainerNotStartedError: If the container is not running.
            FileTransferError: If the path is missing or the archive is unreadable.
        """
        self._require_running()
        api = self._provider.connection().api
        url = f"{api.base_url}/v{api.api_version}/containers/{self._id}/archive"
        buffer = io.BytesIO()
        try:
            with translate_engine_errors(f"copy {container_path} out of {self._label()}"):
                response = api.get(url, params={"path": container_path}, stream=True, timeout=api.timeout)
                with contextlib.closing(response):
                    _raise_for_engine_status(response)
                    for chunk in response.iter_content(chunk_size=DEFAULT_DATA_CHUNK_SIZE):
                        buffer.write(chunk)
        except (EngineError, EngineConnectionError) as e:
            raise FileTransferError(str(e)) from e

        buffer.seek(0)
        try:
            with tarfile.open(fileobj=buffer, mode="r") as archive:
                member = next((m for m in archive.getmembers() if m.isfile()), None)
                if member is None:
                    raise FileTransferError(f"{container_path} is not a regular file")
                extracted = archive.extractfile(member)
                if extracted is None:
                    raise FileTransferError(f"Cannot extract {container_path}")
                with extracted:
                    content = extracted.read()
        except tarfile.TarError as e:
            raise FileTransferError(f"Corrupt archive for {container_path}: {e}") from e

        if destination is not None:
            try:
                if isinstance(destination, (str, os.PathLike)):
                    Path(destination).write_bytes(content)
                else:
                    destination.write(content)
            except OSError as e:
                raise FileTransferError(f"Cannot write {container_path} to {destination}: {e}") from e
        return content

    # -- readiness --------------------------------------------------------

    def _wait_params(self, timeout: float | None, interval: float | None) -> tuple[float, float]:
        defaults = self.settings.wait
        return (
            defaults.timeout if timeout is None else timeout,
            defaults.interval if interval is None else interval,
        )

    def wait_for_logs(
        self, pattern: str | Pattern[str], *, timeout: float | None = None, interval: float | None = None
    ) -> bool:
        """Block until stdout or stderr matches ``pattern``."""
        self._require_container()
        timeout, interval = self._wait_params(timeout, interval)
        return waits.wait_for_logs(self, pattern, timeout=timeout, interval=interval)

    def wait_for_tcp_port(
        self, port: int | str, *, timeout: float | None = None, interval: float | None = None
    ) -> bool:
        """Block until the published mapping of ``port`` accepts TCP connections."""
        self._require_container()
        timeout, interval = self._wait_params(timeout, interval)
        return waits.wait_for_tcp_port(self, port, timeout=timeout, interval=interval)

    def wait_for_http(
        self,
        *,
        path: str = "/",
        container_port: int | str = 80,
        https: bool = False,
        status: int = 200,
        timeout: float | None = None,
        interval: float | None = None,
    ) -> bool:
        """Block until ``GET path`` on ``container_port`` answers with ``status``."""
        self._require_container()
        timeout, interval = self._wait_params(timeout, interval)
        return waits.wait_for_http(
            self,
            path=path,
            container_port=container_port,
            https=https,
            status=status,
            timeout=timeout,
            interval=interval,
        )

    def wait_for_healthcheck(self, *, timeout: float | None = None, interval: float | None = None) -> bool:
        """Block until the engine reports the container healthy."""
        self._require_container()
        timeout, interval = self._wait_params(timeout, interval)
        return waits.wait_for_healthcheck(self, timeout=timeout, interval=interval)


__all__ = ["ContainerState", "DockerContainer", "ExecResult"]
