"""Low-level Docker SDK access: endpoint resolution and error translation (internal)."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
import threading
from typing import TYPE_CHECKING, Any

import docker
from docker.constants import DEFAULT_DOCKER_API_VERSION, DEFAULT_UNIX_SOCKET, DEFAULT_USER_AGENT
from dotenv import dotenv_values
import requests

from .config import DockyardSettings, get_settings
from .errors import (
    DockerError,
    EngineConnectionError,
    EngineError,
    ImageNotFoundError,
    InvalidStateError,
    NotFoundError,
)
from .log_utils import logger
from .version import __version__


if TYPE_CHECKING:  # pragma: no cover - typing only
    from docker import DockerClient as _DockerClient
else:  # pragma: no cover - runtime fallback when typing info unavailable
    _DockerClient = object


USER_AGENT = f"dockyard-python/{__version__}"
PROPERTIES_HOST_KEY = "tc.host"


def _explain(exc: BaseException) -> str:
    explanation = getattr(exc, "explanation", None)
    if isinstance(explanation, bytes):
        explanation = explanation.decode("utf-8", errors="replace")
    return str(explanation or exc)


@contextmanager
def translate_engine_errors(action: str) -> Iterator[None]:
    """Reclassify Docker SDK and transport failures raised while performing ``action``.

    This is the only boundary where raw ``docker.errors`` and ``requests``
    exceptions are caught; everything leaving it is a ``DockerError``.
    """
    try:
        yield
    except DockerError:
        raise
    except docker.errors.ImageNotFound as e:
        raise ImageNotFoundError(f"Failed to {action}: {_explain(e)}", e.status_code) from e
    except docker.errors.NotFound as e:
        raise NotFoundError(f"Failed to {action}: {_explain(e)}", e.status_code) from e
    except docker.errors.APIError as e:
        raise EngineError(f"Failed to {action}: {_explain(e)}", e.status_code) from e
    except requests.exceptions.RequestException as e:
        raise EngineConnectionError(
            f"Failed to {action}: the Docker daemon is unreachable ({e})."
        ) from e
    except docker.errors.DockerException as e:
        raise EngineError(f"Failed to {action}: {_explain(e)}") from e


def load_properties(path: Path) -> dict[str, str]:
    """Return ``key=value`` pairs from a properties file, or ``{}`` when unusable."""
    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path, encoding="utf-8")
    except (OSError, UnicodeDecodeError, ValueError) as e:
        logger.debug(f"Ignoring unreadable properties file {path}: {e}")
        return {}
    return {key: value for key, value in values.items() if value}


class DockerClientProvider:
    """Lazily builds and caches one Docker client for the process.

    The endpoint is resolved once, in priority order: an explicit
    ``configure(base_url=...)`` call, ``TESTCONTAINERS_HOST``, the ``tc.host``
    key of the properties file, and finally the SDK's own environment
    defaults (``DOCKER_HOST`` or the local socket). Once a client exists its
    endpoint is never swapped.
    """

    def __init__(
        self,
        settings: DockyardSettings | None = None,
        *,
        client_factory: Callable[..., Any] | None = None,
        env_factory: Callable[..., Any] | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or docker.DockerClient
        self._env_factory = env_factory or docker.from_env
        self._client: _DockerClient | None = None
        self._base_url_override: str | None = None
        self._base_url: str | None = None
        self._lock = threading.Lock()

    @property
    def settings(self) -> DockyardSettings:
        return self._settings or get_settings()

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def configure(self, base_url: str) -> None:
        """Pin the engine endpoint; refuses to swap an established connection."""
        with self._lock:
            if self._client is not None and base_url != self._base_url:
                raise InvalidStateError(
                    f"Docker client already connected to {self._base_url!r}; "
                    f"refusing to switch to {base_url!r}."
                )
            self._base_url_override = base_url

    def resolve_base_url(self) -> str | None:
        """Return the configured endpoint override, or None to use SDK defaults."""
        if self._base_url_override:
            return self._base_url_override
        engine = self.settings.engine
        if engine.testcontainers_host:
            return engine.testcontainers_host
        return load_properties(engine.properties_path).get(PROPERTIES_HOST_KEY) or None

    @property
    def base_url(self) -> str:
        """Endpoint URL as configured (before the SDK rewrites socket URLs)."""
        if self._base_url:
            return self._base_url
        return self.resolve_base_url() or self.settings.engine.docker_host or DEFAULT_UNIX_SOCKET

    def connection(self) -> _DockerClient:
        """Return the cached client, building it on first use."""
        with self._lock:
            if self._client is None:
                self._client = self._connect()
            self._ensure_user_agent(self._client)
            return self._client

    def reset(self) -> None:
        """Close and forget the cached client (used by tests)."""
        with self._lock:
            client, self._client = self._client, None
            self._base_url = None
            self._base_url_override = None
        if client is not None:
            close = getattr(client, "close", None)
            if callable(close):
                close()

    def _connect(self) -> _DockerClient:
        base_url = self.resolve_base_url()
        # Only "auto" makes the SDK query the daemon while building the client.
        version = self.settings.engine.api_version or DEFAULT_DOCKER_API_VERSION
        try:
            if base_url:
                logger.debug(f"Connecting to Docker daemon at {base_url}")
                client = self._client_factory(base_url=base_url, version=version)
            else:
                client = self._env_factory(version=version)
        except docker.errors.DockerException as e:
            raise EngineConnectionError(
                f"Failed to connect to the Docker daemon: {_explain(e)}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise EngineConnectionError(f"Failed to connect to the Docker daemon: {e}") from e
        self._base_url = base_url or self.settings.engine.docker_host or DEFAULT_UNIX_SOCKET
        return client

    @staticmethod
    def _ensure_user_agent(client: _DockerClient) -> None:
        api = getattr(client, "api", None)
        headers = getattr(api, "headers", None)
        if headers is None:
            return
        current = headers.get("User-Agent")
        if current is None or current == DEFAULT_USER_AGENT:
            headers["User-Agent"] = USER_AGENT


_default_provider = DockerClientProvider()


def get_provider() -> DockerClientProvider:
    """Return the process-wide client provider."""
    return _default_provider


def connection() -> _DockerClient:
    """Return the process-wide Docker client."""
    return _default_provider.connection()


__all__ = [
    "DockerClientProvider",
    "USER_AGENT",
    "connection",
    "get_provider",
    "load_properties",
    "translate_engine_errors",
]
