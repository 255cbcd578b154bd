"""Shared test fixtures for engine tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from fleet.config import EngineConfig
from fleet.models import Target
from fleet.orchestrator import UpdateOrchestrator
from fleet.targets import InMemoryTargetStore
from fleet.testing import FakeConnector
from pkgmgr import PackageManagerAdapter

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Isolate tests from the real user config and data directories.

    Sets XDG_CONFIG_HOME and XDG_DATA_HOME to temporary directories so that
    tests don't read or modify ~/.config/update-fleet or the real history
    database.
    """
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg_config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg_data"))
    monkeypatch.delenv("UPDATE_FLEET_CONFIG", raising=False)
    yield tmp_path


@pytest.fixture
def fast_config() -> EngineConfig:
    """Engine config with re-probe and re-check delays shrunk for tests."""
    return EngineConfig(
        max_concurrent_sessions=2,
        reprobe_interval=0.01,
        reprobe_timeout=0.2,
        recheck_retries=2,
        recheck_retry_delay=0,
    )


@pytest.fixture
def make_target() -> Callable[..., Target]:
    """Factory for targets that already know their package managers."""

    def factory(target_id: int = 1, managers: list[str] | None = None, **kwargs: object) -> Target:
        return Target(
            id=target_id,
            name=f"host{target_id}",
            hostname=f"10.0.0.{target_id}",
            username="admin",
            detected_managers=["apt"] if managers is None else managers,
            **kwargs,  # type: ignore[arg-type]
        )

    return factory


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def make_orchestrator(
    connector: FakeConnector,
    fast_config: EngineConfig,
    make_target: Callable[..., Target],
) -> Callable[..., UpdateOrchestrator]:
    """Factory for an orchestrator over fake hosts with the real package managers."""

    def factory(targets: list[Target] | None = None, **kwargs: object) -> UpdateOrchestrator:
        store = InMemoryTargetStore(targets if targets is not None else [make_target(1)])
        kwargs.setdefault("config", fast_config)
        return UpdateOrchestrator(store, connector, PackageManagerAdapter(), **kwargs)  # type: ignore[arg-type]

    return factory
