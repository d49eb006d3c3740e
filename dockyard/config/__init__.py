"""Environment-driven settings for dockyard.

Everything that reads ``TESTCONTAINERS_HOST``, ``TC_HOST``, ``DOCKER_HOST`` or
a ``DOCKYARD_*`` variable goes through ``get_settings()``.
"""

from .settings import DockyardSettings, LoggingSettings, get_settings


__all__ = ["DockyardSettings", "LoggingSettings", "get_settings"]
