"""Shared test fixtures for CLI tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

from fleet.testing import FakeConnector

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

CONFIG = """\
engine:
  log_level: warning
targets:
  web:
    id: 1
    hostname: 10.0.0.1
    username: admin
    managers: [apt]
  db:
    id: 2
    hostname: 10.0.0.2
    username: admin
    managers: [dnf]
"""


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Isolate tests from the real user config and data directories.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to temporary directories so that
    tests don't read ~/.config/update-fleet or write the real history
    database at ~/.local/share/update-fleet/.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg_config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg_data"))
    monkeypatch.delenv("UPDATE_FLEET_CONFIG", raising=False)
    yield tmp_path
    # Commands point structlog at the runner's stderr, which is closed by now
    structlog.reset_defaults()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A configuration file with two targets, web (apt) and db (dnf)."""
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG)
    return path


@pytest.fixture
def connector(monkeypatch: pytest.MonkeyPatch) -> FakeConnector:
    """Replace SSH with scripted fake hosts for every command."""
    fake = FakeConnector()
    monkeypatch.setattr("fleetctl.main.SSHConnector", lambda **_kwargs: fake)
    return fake
