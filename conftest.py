# Test configuration utilities.
# Ensures the repository root is on sys.path so that 'dockyard' can be imported
# when running pytest without installing the package.
from __future__ import annotations

from collections.abc import Callable, Iterator
import os
from pathlib import Path
import sys
from unittest import mock

import pytest


ROOT = Path(__file__).parent.resolve()
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dockyard.config.settings import (  # noqa: E402
    AddressSettings,
    DockyardSettings,
    EngineSettings,
    LoggingSettings,
    WaitSettings,
)


# DOCKER_HOST is left alone so integration tests still reach the daemon.
_ISOLATED_ENV_VARS = (
    "TESTCONTAINERS_HOST",
    "TC_HOST",
    "DOCKYARD_PROPERTIES_PATH",
    "DOCKYARD_CONTAINER_MARKER",
    "DOCKYARD_WAIT_TIMEOUT",
    "DOCKYARD_WAIT_INTERVAL",
    "DOCKYARD_API_VERSION",
    "DOCKYARD_LOG_LEVEL",
    "DOCKYARD_LOG_FILE",
)


def pytest_configure(config: pytest.Config) -> None:
    # Fixtures come from the pytest11 entry point once installed.
    if not config.pluginmanager.has_plugin("dockyard"):
        config.pluginmanager.import_plugin("dockyard.pytest_plugin")


@pytest.fixture(autouse=True)
def isolated_environ() -> Iterator[None]:
    """Restore os.environ after each test (python-dotenv writes into it)."""
    with mock.patch.dict(os.environ):
        for key in _ISOLATED_ENV_VARS:
            os.environ.pop(key, None)
        yield


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., DockyardSettings]:
    """Build a settings snapshot without reading the environment.

    The container marker defaults to a path that does not exist, so the
    in-container heuristics stay off unless a test opts in.
    """

    def _make(
        *,
        testcontainers_host: str | None = None,
        docker_host: str | None = None,
        api_version: str | None = None,
        properties_path: Path | None = None,
        host_override: str | None = None,
        container_marker: Path | None = None,
        timeout: float = 5.0,
        interval: float = 0.01,
    ) -> DockyardSettings:
        return DockyardSettings(
            env_file=tmp_path / ".env",
            engine=EngineSettings(
                testcontainers_host=testcontainers_host,
                docker_host=docker_host,
                api_version=api_version,
                properties_path=properties_path or tmp_path / "missing.properties",
            ),
            address=AddressSettings(
                host_override=host_override,
                container_marker=container_marker or tmp_path / "no-dockerenv",
            ),
            wait=WaitSettings(timeout=timeout, interval=interval),
            logging=LoggingSettings(level="DEBUG", file_path=None),
        )

    return _make
