"""Wait strategies: bounded polling predicates that block until a container is ready.

Every strategy shares one contract: re-check at ``interval`` until the
predicate holds or ``timeout`` elapses, then raise ``WaitTimeoutError``
naming what was being waited for. "Not ready yet" conditions (refused
connections, socket timeouts) are retried; anything else propagates at once.

Strategies are declared as small frozen dataclasses so a ``ContainerSpec``
can carry them around; ``DockerContainer`` matches on the variant and runs
the corresponding ``wait_for_*`` function below.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import errno
import re
import socket
from typing import TYPE_CHECKING, Any, ClassVar, Pattern, TypeVar, Union
import warnings

import requests
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_before_delay,
    wait_fixed,
)
from urllib3.exceptions import InsecureRequestWarning

from .errors import HealthcheckNotSupportedError, WaitTimeoutError
from .log_utils import logger


if TYPE_CHECKING:  # pragma: no cover - typing only
    from .container import DockerContainer


T = TypeVar("T")

# Socket errors that mean "nothing is listening yet" rather than a real failure.
_NOT_READY_ERRNOS = frozenset(
    {errno.ECONNREFUSED, errno.EHOSTUNREACH, errno.ENETUNREACH, errno.ECONNRESET}
)


class _NotReady(Exception):
    """Internal marker for a transient "not ready yet" condition."""


@dataclass(frozen=True, slots=True)
class LogMatch:
    """Ready once stdout or stderr matches ``pattern``."""

    pattern: str | Pattern[str]
    timeout: float | None = None
    interval: float | None = None

    kind: ClassVar[str] = "logs"


@dataclass(frozen=True, slots=True)
class TcpPort:
    """Ready once a TCP connection to the mapped ``port`` succeeds."""

    port: int | str
    timeout: float | None = None
    interval: float | None = None

    kind: ClassVar[str] = "tcp_port"


@dataclass(frozen=True, slots=True)
class Http:
    """Ready once ``GET path`` on the mapped ``container_port`` returns ``status``."""

    path: str = "/"
    container_port: int | str = 80
    https: bool = False
    status: int = 200
    timeout: float | None = None
    interval: float | None = None

    kind: ClassVar[str] = "http"


@dataclass(frozen=True, slots=True)
class Healthcheck:
    """Ready once the engine reports the container's health check as healthy."""

    timeout: float | None = None
    interval: float | None = None

    kind: ClassVar[str] = "healthcheck"


@dataclass(frozen=True, slots=True)
class Callback:
    """Caller-supplied callable invoked once with the started container.

    The callable does its own blocking (typically through one of the
    container's ``wait_for_*`` methods); its return value is ignored.
    """

    function: Callable[["DockerContainer"], Any]

    kind: ClassVar[str] = "callback"


WaitStrategy = Union[LogMatch, TcpPort, Http, Healthcheck, Callback]

# Built-in strategies addressable by name from ``ContainerSpec.add_wait_for``.
BUILTIN_STRATEGIES: dict[str, type[LogMatch | TcpPort | Http | Healthcheck]] = {
    LogMatch.kind: LogMatch,
    TcpPort.kind: TcpPort,
    Http.kind: Http,
    Healthcheck.kind: Healthcheck,
}


def _log_retry(description: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        reason = "not ready"
        if outcome is not None and outcome.failed:
            reason = repr(outcome.exception())
        logger.debug(
            f"Still waiting for {description} "
            f"(attempt {state.attempt_number}, {state.seconds_since_start:.1f}s elapsed: {reason})"
        )

    return _before_sleep


def poll_until(
    check: Callable[[], T],
    *,
    timeout: float,
    interval: float,
    description: str,
    not_ready: tuple[type[BaseException], ...] = (),
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Call ``check`` every ``interval`` seconds until it returns a truthy value.

    Args:
        check: Zero-argument predicate; a falsy result means "not ready yet".
        timeout: Overall deadline in seconds. No new attempt starts past it.
        interval: Pause between attempts in seconds.
        description: Human readable subject used in logs and the timeout error.
        not_ready: Exception types that count as "not ready yet" and are retried.
        sleep: Optional sleep function (tests inject a fake clock here).

    Returns:
        The first truthy value returned by ``check``.

    Raises:
        WaitTimeoutError: If the deadline passes before ``check`` succeeds.
    """
    retry = retry_if_result(lambda result: not result)
    if not_ready:
        retry = retry | retry_if_exception_type(not_ready)

    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    retrying = Retrying(
        stop=stop_before_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry,
        before_sleep=_log_retry(description),
        reraise=False,
        **kwargs,
    )
    try:
        return retrying(check)
    except RetryError as e:
        raise WaitTimeoutError(f"Timed out after {timeout:g}s waiting for {description}") from e


def _compile(pattern: str | Pattern[str]) -> Pattern[str]:
    return re.compile(pattern) if isinstance(pattern, str) else pattern


def wait_for_logs(
    container: "DockerContainer",
    pattern: str | Pattern[str],
    *,
    timeout: float,
    interval: float,
) -> bool:
    """Block until the container's stdout or stderr matches ``pattern``."""
    matcher = _compile(pattern)

    def _check() -> bool:
        stdout, stderr = container.logs()
        return bool(matcher.search(stdout) or matcher.search(stderr))

    return poll_until(
        _check,
        timeout=timeout,
        interval=interval,
        description=f"logs to match {matcher.pattern!r}",
    )


def _probe_tcp(host: str, port: int, interval: float) -> bool:
    try:
        with socket.create_connection((host, port), timeout=interval):
            return True
    except (ConnectionRefusedError, socket.timeout) as e:
        raise _NotReady(str(e)) from e
    except OSError as e:
        if e.errno in _NOT_READY_ERRNOS:
            raise _NotReady(str(e)) from e
        raise


def wait_for_tcp_port(
    container: "DockerContainer",
    port: int | str,
    *,
    timeout: float,
    interval: float,
) -> bool:
    """Block until a TCP connection to the host-side mapping of ``port`` succeeds.

    Raises:
        PortNotMappedError: Immediately, if ``port`` has no mapping.
        WaitTimeoutError: If the port never accepts a connection in time.
    """
    container.mapped_port(port)

    def _check() -> bool:
        return _probe_tcp(container.host(), container.mapped_port(port), interval)

    return poll_until(
        _check,
        timeout=timeout,
        interval=interval,
        description=f"port {port} to accept TCP connections",
        not_ready=(_NotReady,),
    )


def wait_for_http(
    container: "DockerContainer",
    *,
    path: str = "/",
    container_port: int | str = 80,
    https: bool = False,
    status: int = 200,
    timeout: float,
    interval: float,
) -> bool:
    """Block until an HTTP GET on the mapped port answers with ``status``.

    Raises:
        PortNotMappedError: Immediately, if ``container_port`` has no mapping.
        WaitTimeoutError: If the expected status is never returned in time.
    """
    container.mapped_port(container_port)
    scheme = "https" if https else "http"
    request_timeout = max(interval, 1.0)

    options: dict[str, Any] = {"timeout": request_timeout, "stream": True}
    if https:
        # Test containers serve self-signed certificates.
        options["verify"] = False

    def _check() -> bool:
        url = f"{scheme}://{container.host()}:{container.mapped_port(container_port)}{path}"
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", InsecureRequestWarning)
            with requests.get(url, **options) as response:
                return response.status_code == status

    return poll_until(
        _check,
        timeout=timeout,
        interval=interval,
        description=f"HTTP status {status} on {path}",
        not_ready=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
    )


def wait_for_healthcheck(
    container: "DockerContainer",
    *,
    timeout: float,
    interval: float,
) -> bool:
    """Block until the container's health check reports healthy.

    Raises:
        HealthcheckNotSupportedError: If the container declares no health check.
    """
    if not container.supports_healthcheck():
        raise HealthcheckNotSupportedError()
    return poll_until(
        container.is_healthy,
        timeout=timeout,
        interval=interval,
        description="health check to report healthy",
    )


__all__ = [
    "BUILTIN_STRATEGIES",
    "Callback",
    "Healthcheck",
    "Http",
    "LogMatch",
    "TcpPort",
    "WaitStrategy",
    "poll_until",
    "wait_for_healthcheck",
    "wait_for_http",
    "wait_for_logs",
    "wait_for_tcp_port",
]
