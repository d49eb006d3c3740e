"""Centralised environment configuration for dockyard.

This module ensures `.env` loading happens in one place and exposes a
typed snapshot of the engine endpoint overrides, address overrides, wait
defaults and logging knobs. Downstream modules call `get_settings()` instead
of touching `os.environ` directly, making it easier to validate values and
override behaviour in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path

from dotenv import load_dotenv


_DEFAULT_ENV_PATH = Path.cwd() / ".env"

DEFAULT_PROPERTIES_PATH = "~/.testcontainers.properties"
DEFAULT_CONTAINER_MARKER = "/.dockerenv"
DEFAULT_WAIT_TIMEOUT = 60.0
DEFAULT_WAIT_INTERVAL = 0.1


def _coerce_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _non_empty(value: str | None) -> str | None:
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass(frozen=True)
class EngineSettings:
    testcontainers_host: str | None
    docker_host: str | None
    api_version: str | None
    properties_path: Path


@dataclass(frozen=True)
class AddressSettings:
    host_override: str | None
    container_marker: Path


@dataclass(frozen=True)
class WaitSettings:
    timeout: float
    interval: float


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    file_path: str | None


@dataclass(frozen=True)
class DockyardSettings:
    """Top-level snapshot of configuration values."""

    env_file: Path
    engine: EngineSettings
    address: AddressSettings
    wait: WaitSettings
    logging: LoggingSettings


def _resolve_env_path(env_file: os.PathLike[str] | str | None) -> Path:
    if env_file is None:
        return _DEFAULT_ENV_PATH
    return Path(env_file).resolve()


@lru_cache(maxsize=4)
def _load_settings(env_path: Path) -> DockyardSettings:
    # Existing environment variables take precedence over `.env` defaults.
    load_dotenv(dotenv_path=env_path, override=False)

    engine = EngineSettings(
        testcontainers_host=_non_empty(os.getenv("TESTCONTAINERS_HOST")),
        docker_host=_non_empty(os.getenv("DOCKER_HOST")),
        api_version=_non_empty(os.getenv("DOCKYARD_API_VERSION")),
        properties_path=Path(
            os.getenv("DOCKYARD_PROPERTIES_PATH") or DEFAULT_PROPERTIES_PATH
        ).expanduser(),
    )
    address = AddressSettings(
        host_override=_non_empty(os.getenv("TC_HOST")),
        container_marker=Path(os.getenv("DOCKYARD_CONTAINER_MARKER") or DEFAULT_CONTAINER_MARKER),
    )
    wait = WaitSettings(
        timeout=_coerce_float(os.getenv("DOCKYARD_WAIT_TIMEOUT"), DEFAULT_WAIT_TIMEOUT),
        interval=_coerce_float(os.getenv("DOCKYARD_WAIT_INTERVAL"), DEFAULT_WAIT_INTERVAL),
    )
    logging = LoggingSettings(
        level=(os.getenv("DOCKYARD_LOG_LEVEL") or "INFO").upper(),
        file_path=_non_empty(os.getenv("DOCKYARD_LOG_FILE")),
    )

    return DockyardSettings(
        env_file=env_path,
        engine=engine,
        address=address,
        wait=wait,
        logging=logging,
    )


def get_settings(
    env_file: os.PathLike[str] | str | None = None,
    *,
    reload: bool = False,
) -> DockyardSettings:
    """Return the cached settings snapshot.

    Args:
        env_file: Optional explicit path to a `.env` file. When omitted the
            `.env` file of the current working directory is used.
        reload: When True the cached snapshot is cleared before loading.
    """
    env_path = _resolve_env_path(env_file)
    if reload:
        _load_settings.cache_clear()
    return _load_settings(env_path)
