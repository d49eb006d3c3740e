"""Declarative container description and its builder operations.

A ``ContainerSpec`` collects everything needed to create a container (image,
command, ports, volumes, binds, environment, labels, health check, wait
strategy, network) and normalizes every accepted input shape into the
Engine API representation. Once the container has been created from it the
spec is frozen and further mutation raises ``InvalidStateError``.

Two flavours of each mutator exist:
    * ``add_*`` returns the updated aggregate (e.g. the env list).
    * ``with_*`` returns the ContainerSpec itself for chaining.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
import inspect
import shlex
from typing import TYPE_CHECKING, Any

from .errors import InvalidArgumentError, InvalidStateError
from .log_utils import logger
from .waits import BUILTIN_STRATEGIES, Callback, Healthcheck, Http, LogMatch, TcpPort, WaitStrategy


if TYPE_CHECKING:  # pragma: no cover - typing only
    from .network import Network


PROTOCOLS = ("tcp", "udp", "sctp")
BIND_MODES = ("rw", "ro")

DEFAULT_HEALTHCHECK_INTERVAL = 30.0
DEFAULT_HEALTHCHECK_TIMEOUT = 30.0
DEFAULT_HEALTHCHECK_RETRIES = 3

_NANOSECONDS = 1_000_000_000
_HEALTHCHECK_KEYS = frozenset({"test", "interval", "timeout", "retries", "shell", "use_shell"})


def normalize_port(port: int | str) -> str:
    """Return the canonical ``"<port>/<protocol>"`` form of ``port``.

    Bare integers and strings without a protocol default to ``tcp``.
    """
    if isinstance(port, bool):
        raise InvalidArgumentError(f"Invalid port: {port!r}")
    text = str(port).strip()
    number, _, protocol = text.partition("/")
    protocol = (protocol or "tcp").lower()
    if not number.isdigit() or not 0 < int(number) < 65536:
        raise InvalidArgumentError(f"Invalid port: {port!r}")
    if protocol not in PROTOCOLS:
        raise InvalidArgumentError(f"Invalid port protocol in {port!r}; expected one of {PROTOCOLS}")
    return f"{int(number)}/{protocol}"


def _env_entry(entry: Any) -> str:
    if not isinstance(entry, str) or "=" not in entry or entry.startswith("="):
        raise InvalidArgumentError(
            f"Invalid environment entry {entry!r}: expected a 'KEY=VALUE' string"
        )
    return entry


def _seconds_to_ns(value: Any, field: str) -> int:
    try:
        seconds = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentError(f"Health check {field} must be a number of seconds") from e
    if seconds < 0:
        raise InvalidArgumentError(f"Health check {field} must not be negative")
    return int(seconds * _NANOSECONDS)


def _callback_arity_ok(function: Callable[..., Any]) -> bool:
    try:
        signature = inspect.signature(function)
    except (TypeError, ValueError):
        return True
    try:
        signature.bind(object())
    except TypeError:
        return False
    return True


class ContainerSpec:
    """Mutable builder describing the container to create.

    Attributes:
        image: Image reference (``repository[:tag]``).
        name: Optional container name.
        command: Command override.
        entrypoint: Entrypoint override.
        exposed_ports: ``{"<port>/<proto>": {}}`` as sent to the engine.
        port_bindings: ``{"<port>/<proto>": [{"HostPort": "<port or ''>"}]}``;
            an empty host port lets the engine pick an ephemeral one.
        volumes: ``{"<container path>": {}}``.
        filesystem_binds: ``["host:container:mode", ...]``.
        env: ``["KEY=VALUE", ...]`` in insertion order.
        labels: Container labels.
        working_dir: Working directory inside the container.
        healthcheck: Engine health check document or None.
        wait_strategy: Readiness strategy run after start, or None.
        image_create_options: Options for pulling the image (``tag``,
            ``platform``, ``auth_config``).
        network: Network the container joins (at most one).
        network_aliases: Aliases on that network.
    """

    def __init__(
        self,
        image: str,
        *,
        name: str | None = None,
        command: Sequence[str] | str | None = None,
        entrypoint: Sequence[str] | str | None = None,
        exposed_ports: Iterable[int | str] | None = None,
        port_bindings: Mapping[int | str, int | str | None] | None = None,
        volumes: Iterable[str] | Mapping[str, Any] | None = None,
        filesystem_binds: Any = None,
        env: Any = None,
        labels: Mapping[str, str] | None = None,
        working_dir: str | None = None,
        healthcheck: Mapping[str, Any] | None = None,
        wait_for: Any = None,
        image_create_options: Mapping[str, Any] | None = None,
    ) -> None:
        if not image or not isinstance(image, str):
            raise InvalidArgumentError("image must be a non-empty string")
        self.image = image
        self.name = name
        self.command: list[str] | None = None
        self.entrypoint: list[str] | None = None
        self.exposed_ports: dict[str, dict[str, Any]] = {}
        self.port_bindings: dict[str, list[dict[str, str]]] = {}
        self.volumes: dict[str, dict[str, Any]] = {}
        self.filesystem_binds: list[str] = []
        self.env: list[str] = []
        self.labels: dict[str, str] = {}
        self.working_dir = working_dir
        self.healthcheck: dict[str, Any] | None = None
        self.wait_strategy: WaitStrategy | None = None
        self.image_create_options: dict[str, Any] = dict(image_create_options or {})
        self.network: Network | None = None
        self.network_aliases: list[str] = []
        self._frozen = False

        if command is not None:
            self.with_command(command)
        if entrypoint is not None:
            self.with_entrypoint(entrypoint)
        if exposed_ports is not None:
            self.add_exposed_ports(exposed_ports)
        if port_bindings is not None:
            self.add_fixed_exposed_ports(port_bindings)
        if volumes is not None:
            self.add_volumes(volumes)
        if env is not None:
            self.add_env(env)
        if filesystem_binds is not None:
            self.add_filesystem_binds(filesystem_binds)
        if labels is not None:
            self.add_labels(labels)
        if healthcheck is not None:
            self.add_healthcheck(healthcheck)
        if wait_for is not None:
            self.with_wait_for(wait_for)

    def __repr__(self) -> str:
        return f"ContainerSpec(image={self.image!r}, name={self.name!r})"

    # -- immutability -----------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Forbid further mutation (called once the container exists)."""
        self._frozen = True

    def _check_mutable(self) -> None:
        if self._frozen:
            raise InvalidStateError(
                f"Cannot modify the container spec for {self.image!r}: its container was already created."
            )

    # -- environment ------------------------------------------------------

    def add_env(self, env_or_key: Any, value: str | None = None) -> list[str]:
        """Add environment variables.

        Accepts ``"KEY=VALUE"``, ``("KEY", "VALUE")`` as two arguments, a
        mapping, or a sequence of ``"KEY=VALUE"`` strings.
        """
        self._check_mutable()
        entries = self._process_env_input(env_or_key, value)
        known = {entry.partition("=")[0] for entry in self.env}
        for entry in entries:
            key = entry.partition("=")[0]
            if key in known:
                logger.debug(f"Environment variable {key} set again for {self.image}; the last value wins")
            known.add(key)
            self.env.append(entry)
        return self.env

    @staticmethod
    def _process_env_input(env_or_key: Any, value: Any) -> list[str]:
        if isinstance(env_or_key, Mapping):
            if value is not None:
                raise InvalidArgumentError("value must be None when passing a mapping")
            return [_env_entry(f"{key}={val}") for key, val in env_or_key.items()]
        if isinstance(env_or_key, str):
            if value is None:
                return [_env_entry(env_or_key)]
            if not isinstance(value, str):
                raise InvalidArgumentError("value must be a string when passing a key")
            if not env_or_key or "=" in env_or_key:
                raise InvalidArgumentError(f"Invalid environment key {env_or_key!r}")
            return [f"{env_or_key}={value}"]
        if isinstance(env_or_key, Sequence):
            if value is not None:
                raise InvalidArgumentError("value must be None when passing a sequence")
            return [_env_entry(entry) for entry in env_or_key]
        raise InvalidArgumentError(f"Invalid environment input: {env_or_key!r}")

    def get_env(self, key: str) -> str | None:
        """Return the effective value of ``key`` (last definition wins)."""
        for entry in reversed(self.env):
            name, _, val = entry.partition("=")
            if name == key:
                return val
        return None

    # -- ports ------------------------------------------------------------

    def add_exposed_port(self, port: int | str) -> dict[str, dict[str, Any]]:
        """Expose ``port`` with an engine-assigned host port.

        A port that already has a fixed host binding keeps it.
        """
        self._check_mutable()
        key = normalize_port(port)
        self.exposed_ports[key] = {}
        if not any(binding.get("HostPort") for binding in self.port_bindings.get(key, [])):
            self.port_bindings[key] = [{"HostPort": ""}]
        return self.exposed_ports

    def add_exposed_ports(self, *ports: Any) -> dict[str, dict[str, Any]]:
        if len(ports) == 1 and isinstance(ports[0], Iterable) and not isinstance(ports[0], str):
            ports = tuple(ports[0])
        for port in ports:
            self.add_exposed_port(port)
        return self.exposed_ports

    def add_fixed_exposed_port(
        self,
        container_port: int | str | Mapping[int | str, int | str],
        host_port: int | str | None = None,
    ) -> dict[str, list[dict[str, str]]]:
        """Bind ``container_port`` to a caller-chosen ``host_port``.

        ``container_port`` may also be a single-entry mapping
        ``{container_port: host_port}``.
        """
        self._check_mutable()
        if isinstance(container_port, Mapping):
            if len(container_port) != 1 or host_port is not None:
                raise InvalidArgumentError("Expected a single {container_port: host_port} pair")
            ((container_port, host_port),) = container_port.items()
        key = normalize_port(container_port)
        self.exposed_ports[key] = {}
        self.port_bindings[key] = [{"HostPort": "" if host_port is None else str(host_port)}]
        return self.port_bindings

    def add_fixed_exposed_ports(
        self, port_mappings: Mapping[int | str, int | str | None]
    ) -> dict[str, list[dict[str, str]]]:
        for container_port, host_port in port_mappings.items():
            self.add_fixed_exposed_port(container_port, host_port)
        return self.port_bindings

    # -- volumes and binds ------------------------------------------------

    def add_volume(self, volume: str) -> dict[str, dict[str, Any]]:
        self._check_mutable()
        if not volume or not isinstance(volume, str):
            raise InvalidArgumentError(f"Invalid volume: {volume!r}")
        self.volumes[volume] = {}
        return self.volumes

    def add_volumes(self, volumes: Iterable[str] | Mapping[str, Any]) -> dict[str, dict[str, Any]]:
        if isinstance(volumes, str):
            volumes = [volumes]
        for volume in volumes:
            self.add_volume(volume)
        return self.volumes

    def add_filesystem_bind(
        self,
        host_or_mapping: str | Mapping[str, str],
        container_path: str | None = None,
        mode: str = "rw",
    ) -> list[str]:
        """Bind-mount a host path; the container path is also registered as a volume.

        Accepts ``(host, container[, mode])``, ``"host:container[:mode]"`` or a
        single-entry ``{host: container}`` mapping.
        """
        self._check_mutable()
        if isinstance(host_or_mapping, Mapping):
            if len(host_or_mapping) != 1:
                raise InvalidArgumentError("Expected a single {host_path: container_path} pair")
            ((host_path, container_path),) = host_or_mapping.items()
        elif isinstance(host_or_mapping, str) and container_path is not None:
            host_path = host_or_mapping
        elif isinstance(host_or_mapping, str):
            parts = host_or_mapping.split(":")
            if len(parts) not in (2, 3):
                raise InvalidArgumentError(
                    f"Invalid filesystem bind {host_or_mapping!r}: expected 'host:container[:mode]'"
                )
            host_path, container_path = parts[0], parts[1]
            mode = parts[2] if len(parts) == 3 else "rw"
        else:
            raise InvalidArgumentError(f"Invalid filesystem bind: {host_or_mapping!r}")

        if not host_path or not container_path:
            raise InvalidArgumentError("Filesystem binds need both a host and a container path")
        if mode not in BIND_MODES:
            raise InvalidArgumentError(f"Invalid bind mode {mode!r}; expected one of {BIND_MODES}")

        self.filesystem_binds.append(f"{host_path}:{container_path}:{mode}")
        self.add_volume(container_path)
        return self.filesystem_binds

    def add_filesystem_binds(self, binds: Any) -> list[str]:
        if isinstance(binds, Mapping):
            for host_path, container_path in binds.items():
                self.add_filesystem_bind(host_path, container_path)
        elif isinstance(binds, str):
            self.add_filesystem_bind(binds)
        elif isinstance(binds, Iterable):
            for bind in binds:
                if isinstance(bind, str):
                    self.add_filesystem_bind(bind)
                elif isinstance(bind, Sequence) and len(bind) in (2, 3):
                    self.add_filesystem_bind(*bind)
                else:
                    raise InvalidArgumentError(f"Invalid filesystem bind: {bind!r}")
        else:
            raise InvalidArgumentError(f"Invalid filesystem binds: {binds!r}")
        return self.filesystem_binds

    # -- labels -----------------------------------------------------------

    def add_label(self, label: str, value: str) -> dict[str, str]:
        self._check_mutable()
        self.labels[label] = value
        return self.labels

    def add_labels(self, labels: Mapping[str, str]) -> dict[str, str]:
        for label, value in labels.items():
            self.add_label(label, value)
        return self.labels

    # -- health check -----------------------------------------------------

    def add_healthcheck(
        self,
        test: Sequence[str] | str | Mapping[str, Any] | None = None,
        *,
        interval: float = DEFAULT_HEALTHCHECK_INTERVAL,
        timeout: float = DEFAULT_HEALTHCHECK_TIMEOUT,
        retries: int = DEFAULT_HEALTHCHECK_RETRIES,
        shell: bool = False,
    ) -> dict[str, Any]:
        """Declare the engine-side health check.

        ``test`` is prefixed with ``CMD`` (or ``CMD-SHELL`` when ``shell`` is
        set) unless it already starts with one. Without ``shell`` a string
        command is split into arguments with ``shlex``. Intervals are given
        in seconds and stored in nanoseconds. A mapping with the same keys
        is accepted in place of keyword arguments.
        """
        self._check_mutable()
        if isinstance(test, Mapping):
            unknown = set(test) - _HEALTHCHECK_KEYS
            if unknown:
                raise InvalidArgumentError(f"Unknown health check option(s): {sorted(unknown)}")
            options = dict(test)
            test = options.get("test")
            interval = options.get("interval", interval)
            timeout = options.get("timeout", timeout)
            retries = options.get("retries", retries)
            shell = bool(options.get("shell", options.get("use_shell", shell)))

        if not test:
            raise InvalidArgumentError("A health check needs a test command")
        if isinstance(test, str):
            command = [test] if shell else shlex.split(test)
        else:
            command = list(test)
        if not command:
            raise InvalidArgumentError("A health check needs a test command")
        if command[0] not in ("CMD", "CMD-SHELL", "NONE"):
            command = ["CMD-SHELL", " ".join(command)] if shell else ["CMD", *command]
        if not isinstance(retries, int) or retries < 0:
            raise InvalidArgumentError("Health check retries must be a non-negative integer")

        self.healthcheck = {
            "Test": command,
            "Interval": _seconds_to_ns(interval, "interval"),
            "Timeout": _seconds_to_ns(timeout, "timeout"),
            "Retries": retries,
        }
        return self.healthcheck

    # -- wait strategy ----------------------------------------------------

    def add_wait_for(self, *args: Any, **kwargs: Any) -> WaitStrategy:
        """Set the readiness strategy run after the container starts.

        Forms:
            * no arguments: wait for the first exposed port to accept TCP.
            * a ``WaitStrategy`` instance.
            * a callable taking the container as its single argument.
            * a built-in name (``logs``, ``healthcheck``, ``tcp_port``,
              ``http``) followed by that strategy's arguments.
        """
        self._check_mutable()
        strategy = self._resolve_wait_strategy(args, kwargs)
        self.wait_strategy = strategy
        return strategy

    def _resolve_wait_strategy(self, args: tuple[Any, ...], kwargs: dict[str, Any]) -> WaitStrategy:
        if not args and not kwargs:
            if not self.exposed_ports:
                raise InvalidArgumentError(
                    "add_wait_for() without arguments needs at least one exposed port"
                )
            first = next(iter(self.exposed_ports))
            if not first.endswith("/tcp"):
                raise InvalidArgumentError(f"Cannot wait for TCP on non-TCP port {first}")
            return TcpPort(int(first.partition("/")[0]))

        head, rest = (args[0], args[1:]) if args else (None, ())
        if isinstance(head, (LogMatch, TcpPort, Http, Healthcheck, Callback)):
            if rest or kwargs:
                raise InvalidArgumentError("A wait strategy instance takes no extra arguments")
            return head
        if isinstance(head, str):
            strategy_cls = BUILTIN_STRATEGIES.get(head)
            if strategy_cls is None:
                raise InvalidArgumentError(
                    f"Unknown wait strategy {head!r}; expected one of {sorted(BUILTIN_STRATEGIES)}"
                )
            try:
                return strategy_cls(*rest, **kwargs)
            except TypeError as e:
                raise InvalidArgumentError(f"Invalid arguments for wait strategy {head!r}: {e}") from e
        if callable(head):
            if rest or kwargs:
                raise InvalidArgumentError("A wait callback takes no extra arguments")
            if not _callback_arity_ok(head):
                raise InvalidArgumentError("A wait callback must accept exactly one argument")
            return Callback(head)
        raise InvalidArgumentError(f"Invalid wait strategy: {head!r}")

    # -- fluent setters ---------------------------------------------------

    def with_name(self, name: str) -> ContainerSpec:
        self._check_mutable()
        self.name = name
        return self

    def with_command(self, *parts: Any) -> ContainerSpec:
        self._check_mutable()
        self.command = self._command_list(parts)
        return self

    def with_entrypoint(self, *parts: Any) -> ContainerSpec:
        self._check_mutable()
        self.entrypoint = self._command_list(parts)
        return self

    @staticmethod
    def _command_list(parts: tuple[Any, ...]) -> list[str]:
        if len(parts) == 1 and isinstance(parts[0], str):
            return [parts[0]]
        if len(parts) == 1 and isinstance(parts[0], Sequence):
            return [str(part) for part in parts[0]]
        return [str(part) for part in parts]

    def with_working_dir(self, working_dir: str) -> ContainerSpec:
        self._check_mutable()
        self.working_dir = working_dir
        return self

    def with_env(self, env_or_key: Any, value: str | None = None) -> ContainerSpec:
        self.add_env(env_or_key, value)
        return self

    def with_exposed_ports(self, *ports: Any) -> ContainerSpec:
        self.add_exposed_ports(*ports)
        return self

    def with_fixed_exposed_port(
        self,
        container_port: int | str | Mapping[int | str, int | str],
        host_port: int | str | None = None,
    ) -> ContainerSpec:
        self.add_fixed_exposed_port(container_port, host_port)
        return self

    with_port_binding = with_fixed_exposed_port

    def with_fixed_exposed_ports(self, port_mappings: Mapping[int | str, int | str | None]) -> ContainerSpec:
        self.add_fixed_exposed_ports(port_mappings)
        return self

    def with_volumes(self, volumes: Iterable[str] | Mapping[str, Any]) -> ContainerSpec:
        self.add_volumes(volumes)
        return self

    def with_filesystem_binds(self, binds: Any) -> ContainerSpec:
        self.add_filesystem_binds(binds)
        return self

    def with_labels(self, labels: Mapping[str, str]) -> ContainerSpec:
        self.add_labels(labels)
        return self

    def with_label(self, label: str, value: str) -> ContainerSpec:
        self.add_label(label, value)
        return self

    def with_healthcheck(self, test: Any = None, **options: Any) -> ContainerSpec:
        self.add_healthcheck(test, **options)
        return self

    def with_wait_for(self, *args: Any, **kwargs: Any) -> ContainerSpec:
        if len(args) == 1 and isinstance(args[0], (list, tuple)) and not kwargs:
            args = tuple(args[0])
        self.add_wait_for(*args, **kwargs)
        return self

    def with_image_create_options(self, options: Mapping[str, Any]) -> ContainerSpec:
        self._check_mutable()
        self.image_create_options.update(options)
        return self

    def with_network(self, network: Network) -> ContainerSpec:
        """Attach to ``network`` (replacing any previously chosen one)."""
        self._check_mutable()
        self.network = network
        return self

    def with_network_aliases(self, *aliases: str) -> ContainerSpec:
        self._check_mutable()
        if len(aliases) == 1 and isinstance(aliases[0], (list, tuple)):
            aliases = tuple(aliases[0])
        for alias in aliases:
            if alias not in self.network_aliases:
                self.network_aliases.append(alias)
        return self

    def with_options(self, options: Mapping[str, Any] | None = None, **kwargs: Any) -> ContainerSpec:
        """Apply several ``with_*`` setters at once, keyed by option name.

        Raises:
            InvalidArgumentError: For keys outside the supported set.
        """
        merged = {**(options or {}), **kwargs}
        unknown = [key for key in merged if key not in _WITH_HANDLERS]
        if unknown:
            raise InvalidArgumentError(
                f"Invalid option(s) {unknown}; supported: {sorted(_WITH_HANDLERS)}"
            )
        for key, value in merged.items():
            _WITH_HANDLERS[key](self, value)
        return self

    # -- payload ----------------------------------------------------------

    def create_payload(self) -> dict[str, Any]:
        """Return the Engine API ``POST /containers/create`` body (name excluded)."""
        host_config = {
            "PortBindings": self.port_bindings or None,
            "Binds": self.filesystem_binds or None,
        }
        payload: dict[str, Any] = {
            "Image": self.image,
            "Cmd": self.command,
            "Entrypoint": self.entrypoint,
            "ExposedPorts": self.exposed_ports or None,
            "Volumes": self.volumes or None,
            "Env": self.env or None,
            "Labels": self.labels or None,
            "WorkingDir": self.working_dir,
            "Healthcheck": self.healthcheck,
        }
        if self.network is not None:
            host_config["NetworkMode"] = self.network.name
            endpoint: dict[str, Any] = {}
            if self.network_aliases:
                endpoint["Aliases"] = list(self.network_aliases)
            payload["NetworkingConfig"] = {"EndpointsConfig": {self.network.name: endpoint}}
        payload["HostConfig"] = {key: value for key, value in host_config.items() if value is not None}
        return {key: value for key, value in payload.items() if value is not None}


def _splat(method: Callable[..., Any]) -> Callable[[ContainerSpec, Any], Any]:
    def _handler(spec: ContainerSpec, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return method(spec, *value)
        return method(spec, value)

    return _handler


def _single(method: Callable[..., Any]) -> Callable[[ContainerSpec, Any], Any]:
    def _handler(spec: ContainerSpec, value: Any) -> Any:
        return method(spec, value)

    return _handler


_WITH_HANDLERS: dict[str, Callable[[ContainerSpec, Any], Any]] = {
    "name": _single(ContainerSpec.with_name),
    "command": _single(ContainerSpec.with_command),
    "entrypoint": _single(ContainerSpec.with_entrypoint),
    "working_dir": _single(ContainerSpec.with_working_dir),
    "env": _single(ContainerSpec.with_env),
    "exposed_ports": _single(ContainerSpec.with_exposed_ports),
    "fixed_exposed_port": _single(ContainerSpec.with_fixed_exposed_port),
    "port_binding": _single(ContainerSpec.with_fixed_exposed_port),
    "fixed_exposed_ports": _single(ContainerSpec.with_fixed_exposed_ports),
    "volumes": _single(ContainerSpec.with_volumes),
    "filesystem_binds": _single(ContainerSpec.with_filesystem_binds),
    "labels": _single(ContainerSpec.with_labels),
    "healthcheck": _single(ContainerSpec.with_healthcheck),
    "wait_for": _splat(ContainerSpec.with_wait_for),
    "image_create_options": _single(ContainerSpec.with_image_create_options),
    "network": _single(ContainerSpec.with_network),
    "network_aliases": _splat(ContainerSpec.with_network_aliases),
}


__all__ = ["ContainerSpec", "normalize_port"]
