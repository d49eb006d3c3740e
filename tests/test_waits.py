"""Tests for the polling engine and the built-in wait strategies."""

from __future__ import annotations

from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import socket
import threading
import time
from typing import Any
import warnings

import pytest
import requests
from urllib3.exceptions import InsecureRequestWarning

from dockyard.errors import HealthcheckNotSupportedError, PortNotMappedError, WaitTimeoutError
from dockyard.waits import (
    poll_until,
    wait_for_healthcheck,
    wait_for_http,
    wait_for_logs,
    wait_for_tcp_port,
)


class FakeContainer:
    """Stands in for ``DockerContainer`` with scripted answers."""

    def __init__(
        self,
        *,
        ports: dict[int, int] | None = None,
        logs: list[tuple[str, str]] | None = None,
        health: list[bool] | None = None,
        healthcheck: bool = True,
    ) -> None:
        self.ports = ports or {}
        self._logs = logs or [("", "")]
        self._health = health or [True]
        self.healthcheck = healthcheck
        self.log_calls = 0
        self.health_calls = 0

    def host(self) -> str:
        return "127.0.0.1"

    def mapped_port(self, port: int | str) -> int:
        key = int(str(port).partition("/")[0])
        if key not in self.ports:
            raise PortNotMappedError(f"Port {port} is not mapped.")
        return self.ports[key]

    def logs(self) -> tuple[str, str]:
        self.log_calls += 1
        return self._logs[min(self.log_calls, len(self._logs)) - 1]

    def supports_healthcheck(self) -> bool:
        return self.healthcheck

    def is_healthy(self) -> bool:
        self.health_calls += 1
        return self._health[min(self.health_calls, len(self._health)) - 1]


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


@pytest.fixture
def listening_port() -> Iterator[int]:
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen()
    try:
        yield server.getsockname()[1]
    finally:
        server.close()


class _StatusHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        self.send_response(200 if self.path == "/health" else 404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        return


@pytest.fixture
def http_port(monkeypatch: pytest.MonkeyPatch) -> Iterator[int]:
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _StatusHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server.server_address[1]
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def test_poll_until_returns_first_truthy_result() -> None:
    answers = iter([None, 0, "ready"])
    sleeps: list[float] = []

    result = poll_until(
        lambda: next(answers),
        timeout=10,
        interval=0.05,
        description="something",
        sleep=sleeps.append,
    )

    assert result == "ready"
    assert sleeps == [0.05, 0.05]


@pytest.mark.timeout(10)
def test_poll_until_stops_at_deadline() -> None:
    calls = 0

    def never() -> bool:
        nonlocal calls
        calls += 1
        return False

    started = time.monotonic()
    with pytest.raises(WaitTimeoutError, match="waiting for the moon"):
        poll_until(never, timeout=0.3, interval=0.05, description="the moon")
    elapsed = time.monotonic() - started

    assert 2 <= calls <= round(0.3 / 0.05) + 1
    assert elapsed < 1.0
    seen = calls
    time.sleep(0.1)
    assert calls == seen


def test_poll_until_retries_not_ready_exceptions() -> None:
    attempts = iter([ConnectionRefusedError(), ConnectionRefusedError(), True])

    def check() -> bool:
        outcome = next(attempts)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert poll_until(
        check,
        timeout=5,
        interval=0.01,
        description="socket",
        not_ready=(ConnectionRefusedError,),
    )


def test_poll_until_propagates_other_errors_immediately() -> None:
    calls = 0

    def check() -> bool:
        nonlocal calls
        calls += 1
        raise KeyError("broken")

    with pytest.raises(KeyError):
        poll_until(check, timeout=5, interval=0.01, description="x", not_ready=(ConnectionError,))
    assert calls == 1


def test_wait_for_logs_matches_either_stream() -> None:
    container = FakeContainer(logs=[("booting", ""), ("booting", "server is READY")])

    assert wait_for_logs(container, r"(?i)ready", timeout=5, interval=0.01)  # type: ignore[arg-type]
    assert container.log_calls == 2


@pytest.mark.timeout(10)
def test_wait_for_logs_times_out() -> None:
    container = FakeContainer(logs=[("nothing", "to see")])

    with pytest.raises(WaitTimeoutError, match="logs to match"):
        wait_for_logs(container, "ready", timeout=0.2, interval=0.05)  # type: ignore[arg-type]


def test_wait_for_tcp_port_succeeds_when_listening(listening_port: int) -> None:
    container = FakeContainer(ports={6379: listening_port})

    assert wait_for_tcp_port(container, 6379, timeout=5, interval=0.05)  # type: ignore[arg-type]


def test_wait_for_tcp_port_fails_fast_when_unmapped() -> None:
    started = time.monotonic()

    with pytest.raises(PortNotMappedError):
        wait_for_tcp_port(FakeContainer(), 6379, timeout=30, interval=0.05)  # type: ignore[arg-type]
    assert time.monotonic() - started < 1.0


@pytest.mark.timeout(10)
def test_wait_for_tcp_port_times_out_on_refused_connection() -> None:
    container = FakeContainer(ports={6379: _unused_port()})

    with pytest.raises(WaitTimeoutError, match="port 6379"):
        wait_for_tcp_port(container, 6379, timeout=0.3, interval=0.05)  # type: ignore[arg-type]


@pytest.mark.timeout(20)
def test_wait_for_http_expected_status(http_port: int) -> None:
    container = FakeContainer(ports={8080: http_port})

    assert wait_for_http(  # type: ignore[arg-type]
        container, path="/health", container_port=8080, timeout=5, interval=0.05
    )


@pytest.mark.timeout(20)
def test_wait_for_http_wrong_status_times_out(http_port: int) -> None:
    container = FakeContainer(ports={8080: http_port})

    with pytest.raises(WaitTimeoutError, match="HTTP status 200"):
        wait_for_http(  # type: ignore[arg-type]
            container, path="/missing", container_port=8080, timeout=0.3, interval=0.05
        )


def test_wait_for_http_fails_fast_when_unmapped() -> None:
    with pytest.raises(PortNotMappedError):
        wait_for_http(FakeContainer(), container_port=80, timeout=30, interval=0.05)  # type: ignore[arg-type]


def test_wait_for_healthcheck_polls_until_healthy() -> None:
    container = FakeContainer(health=[False, False, True])

    assert wait_for_healthcheck(container, timeout=5, interval=0.01)  # type: ignore[arg-type]
    assert container.health_calls == 3


def test_wait_for_healthcheck_requires_declared_check() -> None:
    container = FakeContainer(healthcheck=False)

    with pytest.raises(HealthcheckNotSupportedError):
        wait_for_healthcheck(container, timeout=5, interval=0.01)  # type: ignore[arg-type]
    assert container.health_calls == 0


class _FakeResponse:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def test_wait_for_http_https_skips_verification_quietly(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def fake_get(url: str, **kwargs: Any) -> _FakeResponse:
        calls.append({"url": url, **kwargs})
        warnings.warn("Unverified HTTPS request", InsecureRequestWarning, stacklevel=2)
        return _FakeResponse(200)

    monkeypatch.setattr(requests, "get", fake_get)
    container = FakeContainer(ports={8443: 49200})

    with warnings.catch_warnings():
        warnings.simplefilter("error", InsecureRequestWarning)
        assert wait_for_http(  # type: ignore[arg-type]
            container, container_port=8443, https=True, timeout=5, interval=0.01
        )

    assert calls[0]["url"] == "https://127.0.0.1:49200/"
    assert calls[0]["verify"] is False


def test_wait_for_http_plain_http_keeps_default_verification(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def fake_get(url: str, **kwargs: Any) -> _FakeResponse:
        calls.append(kwargs)
        return _FakeResponse(200)

    monkeypatch.setattr(requests, "get", fake_get)

    assert wait_for_http(  # type: ignore[arg-type]
        FakeContainer(ports={8080: 49201}), container_port=8080, timeout=5, interval=0.01
    )
    assert "verify" not in calls[0]
