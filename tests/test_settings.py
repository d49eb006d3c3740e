"""Tests for the centralised configuration loader."""

from __future__ import annotations

from pathlib import Path

import pytest

from dockyard.config.settings import DEFAULT_WAIT_INTERVAL, DEFAULT_WAIT_TIMEOUT, get_settings


def _write_env(path: Path, content: str) -> None:
    lines = [line.strip() for line in content.strip().splitlines()]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def test_env_file_values_are_loaded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure values from a dedicated env file are parsed into the snapshot."""
    monkeypatch.delenv("DOCKER_HOST", raising=False)
    env_file = tmp_path / "test.env"
    _write_env(
        env_file,
        f"""
        TESTCONTAINERS_HOST=tcp://engine.example.com:2375
        TC_HOST=10.0.0.5
        DOCKER_HOST=unix:///run/user/1000/docker.sock
        DOCKYARD_PROPERTIES_PATH={tmp_path / "tc.properties"}
        DOCKYARD_CONTAINER_MARKER={tmp_path / "marker"}
        DOCKYARD_WAIT_TIMEOUT=12.5
        DOCKYARD_WAIT_INTERVAL=0.25
        DOCKYARD_API_VERSION=1.43
        DOCKYARD_LOG_LEVEL=debug
        """,
    )
    settings = get_settings(env_file=env_file, reload=True)

    assert settings.env_file == env_file.resolve()
    assert settings.engine.testcontainers_host == "tcp://engine.example.com:2375"
    assert settings.engine.docker_host == "unix:///run/user/1000/docker.sock"
    assert settings.engine.api_version == "1.43"
    assert settings.engine.properties_path == tmp_path / "tc.properties"
    assert settings.address.host_override == "10.0.0.5"
    assert settings.address.container_marker == tmp_path / "marker"
    assert settings.wait.timeout == 12.5
    assert settings.wait.interval == 0.25
    assert settings.logging.level == "DEBUG"
    assert settings.logging.file_path is None


def test_environment_variables_override_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Existing environment variables should take precedence over .env contents."""
    env_file = tmp_path / "override.env"
    _write_env(
        env_file,
        """
        TC_HOST=from-file
        DOCKYARD_WAIT_TIMEOUT=5
        """,
    )
    monkeypatch.setenv("TC_HOST", "from-env")
    monkeypatch.setenv("DOCKYARD_WAIT_TIMEOUT", "90")

    settings = get_settings(env_file=env_file, reload=True)

    assert settings.address.host_override == "from-env"
    assert settings.wait.timeout == 90.0


def test_defaults_apply_when_nothing_is_set(tmp_path: Path) -> None:
    settings = get_settings(env_file=tmp_path / "absent.env", reload=True)

    assert settings.engine.testcontainers_host is None
    assert settings.engine.properties_path == Path("~/.testcontainers.properties").expanduser()
    assert settings.address.host_override is None
    assert settings.address.container_marker == Path("/.dockerenv")
    assert settings.wait.timeout == DEFAULT_WAIT_TIMEOUT
    assert settings.wait.interval == DEFAULT_WAIT_INTERVAL
    assert settings.logging.level == "INFO"


@pytest.mark.parametrize("raw", ["abc", "-3", "0", ""])
def test_malformed_numbers_fall_back_to_defaults(
    raw: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DOCKYARD_WAIT_TIMEOUT", raw)
    monkeypatch.setenv("DOCKYARD_WAIT_INTERVAL", raw)

    settings = get_settings(env_file=tmp_path / "absent.env", reload=True)

    assert settings.wait.timeout == DEFAULT_WAIT_TIMEOUT
    assert settings.wait.interval == DEFAULT_WAIT_INTERVAL


def test_blank_overrides_are_treated_as_unset(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TC_HOST", "   ")
    monkeypatch.setenv("TESTCONTAINERS_HOST", "")

    settings = get_settings(env_file=tmp_path / "absent.env", reload=True)

    assert settings.address.host_override is None
    assert settings.engine.testcontainers_host is None


def test_reload_picks_up_changes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Calling get_settings with reload=True should refresh cached values."""
    env_file = tmp_path / "reload.env"
    _write_env(env_file, "TC_HOST=first")
    settings = get_settings(env_file=env_file, reload=True)
    assert settings.address.host_override == "first"

    monkeypatch.setenv("TC_HOST", "second")
    assert get_settings(env_file=env_file).address.host_override == "first"
    updated = get_settings(env_file=env_file, reload=True)
    assert updated.address.host_override == "second"
