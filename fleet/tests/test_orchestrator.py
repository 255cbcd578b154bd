"""Tests for the update orchestrator."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from fleet.config import EngineConfig
from fleet.errors import (
    ErrorKind,
    InvalidPackageNameError,
    TargetBusyError,
    TargetNotFoundError,
    UnsupportedOperationError,
)
from fleet.inference import RebootInference
from fleet.models import (
    HistoryStatus,
    JobStatus,
    OperationKind,
    Reachability,
    ReprobeState,
)
from fleet.orchestrator import UpdateOrchestrator
from fleet.streaming import DoneEvent, OutputEvent, PhaseEvent, ResetEvent, StartedEvent
from fleet.targets import InMemoryTargetStore
from fleet.testing import FakeConnector
from pkgmgr import PackageManagerAdapter

if TYPE_CHECKING:
    from fleet.models import Job, Target

APT_LISTING = (
    "curl/jammy-updates 7.81.0-1ubuntu1.18 amd64 [upgradable from: 7.81.0-1ubuntu1.16]\n"
    "libssl3/jammy-security 3.0.2-0ubuntu1.15 amd64 [upgradable from: 3.0.2-0ubuntu1.14]\n"
    "openssl/jammy-security 3.0.2-0ubuntu1.15 amd64 [upgradable from: 3.0.2-0ubuntu1.14]\n"
)
LISTING = "apt list --upgradable"
UPGRADE = "upgrade -y"
SYSTEM_INFO = "===OS==="
REBOOT_PENDING = (
    '===OS===\nPRETTY_NAME="Ubuntu 22.04.4 LTS"\nVERSION_ID="22.04"\n'
    "===KERNEL===\n5.15.0-105-generic\n"
    "===REBOOT===\nREBOOT_REQUIRED\n"
)
NO_REBOOT = REBOOT_PENDING.replace("REBOOT_REQUIRED", "NO_REBOOT")


async def run(
    orchestrator: UpdateOrchestrator,
    target_id: int,
    kind: OperationKind,
    package: str | None = None,
    **kwargs: str,
) -> Job:
    """Submit an operation and wait for its task to end."""
    job_id = orchestrator.submit(target_id, kind, package, **kwargs)
    return await asyncio.wait_for(orchestrator.join(job_id), timeout=5)


async def wait_until(predicate, timeout: float = 2.0) -> None:  # noqa: ANN001
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class DroppingConnector(FakeConnector):
    """Host goes away for good after the first session."""

    async def connect(self, target: Target):  # noqa: ANN201
        session = await super().connect(target)
        self.host(target.id).unreachable = True
        return session


class TestSubmit:
    """Tests for synchronous validation in submit."""

    @pytest.mark.asyncio
    async def test_unknown_target(self, make_orchestrator) -> None:
        """Unknown targets are rejected before any job exists."""
        orchestrator = make_orchestrator()

        with pytest.raises(TargetNotFoundError):
            orchestrator.submit(99, OperationKind.CHECK)

        assert orchestrator.jobs.list() == []

    @pytest.mark.asyncio
    async def test_invalid_package_name(self, make_orchestrator) -> None:
        """Shell metacharacters in a package name are rejected synchronously."""
        orchestrator = make_orchestrator()

        with pytest.raises(InvalidPackageNameError):
            orchestrator.submit(1, OperationKind.UPGRADE_PACKAGE, "curl; rm -rf /")

        assert not orchestrator.governor.is_busy(1)

    @pytest.mark.asyncio
    async def test_package_name_required(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        with pytest.raises(InvalidPackageNameError):
            orchestrator.submit(1, OperationKind.UPGRADE_PACKAGE)

    @pytest.mark.asyncio
    async def test_package_name_on_check(self, make_orchestrator) -> None:
        """Only single-package upgrades take a package name."""
        orchestrator = make_orchestrator()

        with pytest.raises(UnsupportedOperationError):
            orchestrator.submit(1, OperationKind.CHECK, "curl")

    @pytest.mark.asyncio
    async def test_kind_as_string(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, "check")  # type: ignore[arg-type]

        assert job.kind == OperationKind.CHECK
        assert job.status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_simultaneous_submits(self, make_orchestrator, connector) -> None:
        """Of two operations on one target, one runs and the other is rejected."""
        connector.host(1).on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        first = orchestrator.submit(1, OperationKind.CHECK)
        with pytest.raises(TargetBusyError) as exc_info:
            orchestrator.submit(1, OperationKind.UPGRADE_ALL)

        assert exc_info.value.active_operation == "check"
        job = await orchestrator.join(first)
        assert job.status == JobStatus.DONE
        assert not orchestrator.governor.is_busy(1)

        # The target accepts work again once released
        second = await run(orchestrator, 1, OperationKind.CHECK)
        assert second.status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_busy_error_kind(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        job_id = orchestrator.submit(1, OperationKind.CHECK)

        with pytest.raises(TargetBusyError) as exc_info:
            orchestrator.submit(1, OperationKind.REBOOT)

        assert exc_info.value.kind == ErrorKind.TARGET_BUSY
        await orchestrator.shutdown()
        assert orchestrator.poll(job_id).error_kind == ErrorKind.CANCELLED
        assert not orchestrator.governor.is_busy(1)


class TestCheck:
    """Tests for update checks."""

    @pytest.mark.asyncio
    async def test_check_populates_cache(self, make_orchestrator, connector) -> None:
        connector.host(1).on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.SUCCESS
        assert job.result.update_count == 3
        assert job.result.message == "3 updates available"
        assert job.result.managers == ["apt"]

        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert [u.package_name for u in entry.updates] == ["curl", "libssl3", "openssl"]
        assert entry.security_count == 2
        assert entry.reachability == Reachability.REACHABLE
        assert not orchestrator.cache_view(1).is_stale

    @pytest.mark.asyncio
    async def test_check_writes_one_history_entry(self, make_orchestrator, connector) -> None:
        connector.host(1).on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        await run(orchestrator, 1, OperationKind.CHECK)

        history = orchestrator.history(1)
        assert len(history) == 1
        entry = history[0]
        assert entry.action == OperationKind.CHECK
        assert entry.manager == "apt"
        assert entry.status == HistoryStatus.SUCCESS
        assert entry.package_count == 3
        assert entry.packages == ["curl", "libssl3", "openssl"]
        assert entry.completed_at is not None
        assert "apt list --upgradable" in (entry.command or "")

    @pytest.mark.asyncio
    async def test_unreachable_target(self, make_orchestrator, connector) -> None:
        """An unreachable target is recorded in the cache but not in history."""
        connector.host(1).unreachable = True
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.UNREACHABLE
        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.reachability == Reachability.UNREACHABLE
        assert entry.updates == []
        assert orchestrator.history(1) == []
        assert not orchestrator.governor.is_busy(1)

    @pytest.mark.asyncio
    async def test_failed_refresh_still_lists(self, make_orchestrator, connector) -> None:
        """A failing apt-get update does not fail the check."""
        host = connector.host(1)
        host.on("update -qq", stderr="W: Failed to fetch", exit_code=100)
        host.on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.update_count == 3

    @pytest.mark.asyncio
    async def test_partial_failure_is_warning(self, make_orchestrator, make_target, connector) -> None:
        """One failing family out of two gives a warning, not a failure."""
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING)
        host.on("flatpak remote-ls", exit_code=1)
        orchestrator = make_orchestrator([make_target(1, ["apt", "flatpak"])])

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.WARNING
        assert job.result.message == "Check failed for: flatpak"
        assert job.result.update_count == 3
        [entry] = orchestrator.history(1)
        assert entry.status == HistoryStatus.WARNING
        assert entry.manager == "apt,flatpak"

    @pytest.mark.asyncio
    async def test_total_failure(self, make_orchestrator, connector) -> None:
        connector.host(1).on(LISTING, exit_code=100, stderr="E: broken")
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.COMMAND_FAILED
        [entry] = orchestrator.history(1)
        assert entry.status == HistoryStatus.FAILED

    @pytest.mark.asyncio
    async def test_detects_managers_on_first_contact(
        self, make_orchestrator, make_target, connector
    ) -> None:
        host = connector.host(1)
        host.on("command -v apt-get", stdout="found\n")
        host.on("command -v flatpak", stdout="found\n")
        host.on(LISTING, stdout=APT_LISTING)
        target = make_target(1).model_copy(update={"detected_managers": None})
        orchestrator = make_orchestrator([target])

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        assert orchestrator.targets.get(1).detected_managers == ["apt", "flatpak"]
        assert host.ran("flatpak remote-ls") == 1

        # Detection runs only once
        await run(orchestrator, 1, OperationKind.CHECK)
        assert host.ran("command -v apt-get") == 1

    @pytest.mark.asyncio
    async def test_no_managers_detected(self, make_orchestrator, make_target) -> None:
        orchestrator = make_orchestrator([make_target(1, [])])

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.message == "No package managers detected"
        assert orchestrator.cache.get(1) is not None

    @pytest.mark.asyncio
    async def test_disabled_manager_skipped(self, make_orchestrator, make_target, connector) -> None:
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING)
        target = make_target(1, ["apt", "snap"], disabled_managers=["snap"])
        orchestrator = make_orchestrator([target])

        await run(orchestrator, 1, OperationKind.CHECK)

        assert host.ran("snap refresh --list") == 0

    @pytest.mark.asyncio
    async def test_check_records_system_info(self, make_orchestrator, connector) -> None:
        """A pending reboot reported by the host shows up in the cache view."""
        host = connector.host(1)
        host.on(SYSTEM_INFO, stdout=REBOOT_PENDING)
        host.on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        view = orchestrator.cache_view(1)
        assert view.entry is not None
        assert view.entry.needs_reboot
        assert view.entry.system_info is not None
        assert view.entry.system_info.os_name == "Ubuntu 22.04.4 LTS"
        assert view.entry.system_info.kernel == "5.15.0-105-generic"
        assert len(view.entry.updates) == 3
        # Host facts are not part of the check's history or live output
        assert "===OS===" not in (orchestrator.history(1)[0].command or "")
        assert all(
            "===OS===" not in getattr(event, "command", "")
            for event in orchestrator.broadcaster.snapshot(1)
        )

    @pytest.mark.asyncio
    async def test_system_info_failure_does_not_fail_check(
        self, make_orchestrator, connector
    ) -> None:
        host = connector.host(1)
        host.on(SYSTEM_INFO, hang=True)
        host.on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert job.status == JobStatus.DONE
        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.system_info is None
        assert not entry.needs_reboot
        assert len(entry.updates) == 3

    @pytest.mark.asyncio
    async def test_unreachable_keeps_last_system_info(self, make_orchestrator, connector) -> None:
        host = connector.host(1)
        host.on(SYSTEM_INFO, stdout=REBOOT_PENDING)
        orchestrator = make_orchestrator()
        await run(orchestrator, 1, OperationKind.CHECK)

        host.unreachable = True
        await run(orchestrator, 1, OperationKind.CHECK)

        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.reachability == Reachability.UNREACHABLE
        assert entry.needs_reboot

    @pytest.mark.asyncio
    async def test_sudo_password_resolved_from_env(
        self, make_orchestrator, make_target, connector, monkeypatch
    ) -> None:
        monkeypatch.setenv("FLEET_TEST_SUDO", "s3cret")
        target = make_target(1, sudo_password_env="FLEET_TEST_SUDO")
        orchestrator = make_orchestrator([target])

        await run(orchestrator, 1, OperationKind.CHECK)

        assert "s3cret" in connector.host(1).sudo_passwords

    @pytest.mark.asyncio
    async def test_check_all(self, make_orchestrator, make_target, connector) -> None:
        connector.host(2).on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator([make_target(1), make_target(2)])

        submitted = orchestrator.check_all()

        assert set(submitted) == {1, 2}
        for job_id in submitted.values():
            assert isinstance(job_id, str)
            await orchestrator.join(job_id)
        assert orchestrator.cache.get(1).updates == []  # type: ignore[union-attr]
        assert len(orchestrator.cache.get(2).updates) == 3  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_check_all_reports_busy(self, make_orchestrator, make_target, connector) -> None:
        gate = asyncio.Event()
        connector.host(1).on(UPGRADE, gate=gate)
        orchestrator = make_orchestrator([make_target(1), make_target(2)])
        upgrade = orchestrator.submit(1, OperationKind.UPGRADE_ALL)

        submitted = orchestrator.check_all()

        assert isinstance(submitted[1], TargetBusyError)
        assert isinstance(submitted[2], str)
        gate.set()
        await orchestrator.join(upgrade)
        await orchestrator.join(submitted[2])


class TestConcurrency:
    """Tests for exclusivity and the session ceiling."""

    @pytest.mark.asyncio
    async def test_session_ceiling(self, make_orchestrator, make_target, connector) -> None:
        """Checks across many targets never exceed the configured sessions."""
        targets = [make_target(i) for i in range(1, 6)]
        for target in targets:
            connector.host(target.id).on(LISTING, stdout=APT_LISTING, delay=0.05)
        orchestrator = make_orchestrator(targets)

        submitted = orchestrator.check_all()
        jobs = [await orchestrator.join(job_id) for job_id in submitted.values()]  # type: ignore[arg-type]

        assert all(job.status == JobStatus.DONE for job in jobs)
        assert connector.peak_sessions <= 2
        assert orchestrator.governor.peak_sessions == 2
        assert connector.active_sessions == 0

    @pytest.mark.asyncio
    async def test_waiting_job_is_pending(self, make_target, connector, make_orchestrator) -> None:
        """A job waiting for a session slot stays pending."""
        gate = asyncio.Event()
        connector.host(1).on(LISTING, gate=gate)
        config = EngineConfig(max_concurrent_sessions=1)
        orchestrator = make_orchestrator([make_target(1), make_target(2)], config=config)

        first = orchestrator.submit(1, OperationKind.CHECK)
        await wait_until(lambda: orchestrator.poll(first).status == JobStatus.RUNNING)
        second = orchestrator.submit(2, OperationKind.CHECK)
        await asyncio.sleep(0.02)

        assert orchestrator.poll(second).status == JobStatus.PENDING
        gate.set()
        assert (await orchestrator.join(first)).status == JobStatus.DONE
        assert (await orchestrator.join(second)).status == JobStatus.DONE


class TestUpgrade:
    """Tests for upgrades and their outcome classification."""

    @pytest.mark.asyncio
    async def test_successful_upgrade(self, make_orchestrator, connector) -> None:
        """A clean upgrade is recorded as success and refreshes the cache."""
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING, times=1)
        host.on(UPGRADE, stdout="Setting up curl ...\n")
        orchestrator = make_orchestrator()

        await run(orchestrator, 1, OperationKind.CHECK)
        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.SUCCESS
        assert job.result.message == "Upgraded apt"
        assert job.result.update_count == 0
        assert "Setting up curl" in job.result.output

        upgrade_entry = orchestrator.history(1)[0]
        assert upgrade_entry.action == OperationKind.UPGRADE_ALL
        assert upgrade_entry.status == HistoryStatus.SUCCESS
        assert upgrade_entry.package_count == 3
        assert orchestrator.cache.get(1).updates == []  # type: ignore[union-attr]

        # The next check agrees with the silent re-check
        check = await run(orchestrator, 1, OperationKind.CHECK)
        assert check.result is not None
        assert check.result.update_count == 0

    @pytest.mark.asyncio
    async def test_recheck_refreshes_reboot_flag(self, make_orchestrator, connector) -> None:
        """A kernel upgrade that leaves a reboot pending is visible right after the upgrade."""
        host = connector.host(1)
        host.on(SYSTEM_INFO, stdout=NO_REBOOT, times=1)
        host.on(SYSTEM_INFO, stdout=REBOOT_PENDING)
        host.on(LISTING, stdout=APT_LISTING, times=1)
        orchestrator = make_orchestrator()
        await run(orchestrator, 1, OperationKind.CHECK)
        assert not orchestrator.cache_view(1).entry.needs_reboot  # type: ignore[union-attr]

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.updates == []
        assert entry.needs_reboot
        assert host.ran(SYSTEM_INFO) == 2

    @pytest.mark.asyncio
    async def test_failed_upgrade(self, make_orchestrator, connector) -> None:
        connector.host(1).on(UPGRADE, stderr="E: Sub-process /usr/bin/dpkg returned an error code (1)", exit_code=100)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.COMMAND_FAILED
        assert job.error == "Upgrade failed for apt (exit status 100)"
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.FAILED
        [entry] = orchestrator.history(1)
        assert entry.status == HistoryStatus.FAILED
        assert "dpkg returned an error" in (entry.error or "")

    @pytest.mark.asyncio
    async def test_full_upgrade_command(self, make_orchestrator, connector) -> None:
        orchestrator = make_orchestrator()

        assert orchestrator.supports_full_upgrade(1)
        job = await run(orchestrator, 1, OperationKind.FULL_UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        assert connector.host(1).ran("full-upgrade -y") == 1

    @pytest.mark.asyncio
    async def test_full_upgrade_unsupported(self, make_orchestrator, make_target) -> None:
        orchestrator = make_orchestrator([make_target(1, ["flatpak"])])

        assert not orchestrator.supports_full_upgrade(1)
        job = await run(orchestrator, 1, OperationKind.FULL_UPGRADE_ALL)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.UNSUPPORTED
        assert orchestrator.history(1) == []

    @pytest.mark.asyncio
    async def test_one_history_entry_per_manager(
        self, make_orchestrator, make_target, connector
    ) -> None:
        orchestrator = make_orchestrator([make_target(1, ["apt", "snap"])])

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.managers == ["apt", "snap"]
        history = orchestrator.history(1)
        assert sorted(e.manager for e in history) == ["apt", "snap"]
        assert all(e.status == HistoryStatus.SUCCESS for e in history)

    @pytest.mark.asyncio
    async def test_timeout(self, make_orchestrator, connector) -> None:
        connector.host(1).on(UPGRADE, stdout="Unpacking ...\n", hang=True)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.TIMEOUT
        assert job.error is not None
        assert "may still be running" in job.error
        [entry] = orchestrator.history(1)
        assert entry.status == HistoryStatus.FAILED
        assert entry.output == "Unpacking ...\n"

    @pytest.mark.asyncio
    async def test_disconnect_then_reprobe(self, make_orchestrator, connector) -> None:
        """A dropped upgrade is a warning that the re-probe confirms but never rewrites."""
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING, times=1)
        host.on(UPGRADE, stdout="Unpacking linux-image ...\n", disconnect=True)
        orchestrator = make_orchestrator()

        await run(orchestrator, 1, OperationKind.CHECK)
        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.WARNING
        assert job.result.reprobe == ReprobeState.CONFIRMED
        assert job.result.recovered_exit_code == 0
        assert job.result.update_count == 0
        assert "3 updates before, 0 after" in job.result.message
        assert "Upgrade appears successful" in job.result.message
        assert host.ran("resume 4242") == 1

        upgrade_entry = orchestrator.history(1)[0]
        assert upgrade_entry.action == OperationKind.UPGRADE_ALL
        assert upgrade_entry.status == HistoryStatus.WARNING

        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.updates == []
        assert entry.reachability == Reachability.REACHABLE
        assert not orchestrator.governor.is_busy(1)

    @pytest.mark.asyncio
    async def test_target_reserved_during_reprobe(self, make_target, connector, fast_config) -> None:
        """The job is done with a pending re-probe while the target stays busy."""
        release = asyncio.Event()

        async def gated_sleep(_: float) -> None:
            await release.wait()

        connector.host(1).on(UPGRADE, disconnect=True)
        orchestrator = UpdateOrchestrator(
            InMemoryTargetStore([make_target(1)]),
            connector,
            PackageManagerAdapter(),
            config=fast_config,
            inference=RebootInference(connector, interval=0.01, timeout=5, sleep=gated_sleep),
        )

        job_id = orchestrator.submit(1, OperationKind.UPGRADE_ALL)
        job = await orchestrator.wait(job_id, interval=0.005, timeout=2)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.reprobe == ReprobeState.PENDING
        assert orchestrator.active_operation(1) == "upgrade_all"
        with pytest.raises(TargetBusyError):
            orchestrator.submit(1, OperationKind.CHECK)

        release.set()
        job = await orchestrator.join(job_id)
        assert job.result is not None
        assert job.result.reprobe == ReprobeState.CONFIRMED
        assert orchestrator.active_operation(1) is None

    @pytest.mark.asyncio
    async def test_reprobe_gives_up(self, make_target, fast_config) -> None:
        """A host that never returns keeps the warning and is marked unreachable."""
        connector = DroppingConnector()
        connector.host(1).on(UPGRADE, disconnect=True)
        orchestrator = UpdateOrchestrator(
            InMemoryTargetStore([make_target(1)]),
            connector,
            PackageManagerAdapter(),
            config=fast_config,
        )

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.outcome == HistoryStatus.WARNING
        assert job.result.reprobe == ReprobeState.UNREACHABLE
        assert connector.host(1).connect_attempts > 1
        assert orchestrator.history(1)[0].status == HistoryStatus.WARNING
        assert orchestrator.cache.get(1).reachability == Reachability.UNREACHABLE  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_reprobe_with_lost_state(self, make_orchestrator, connector) -> None:
        host = connector.host(1)
        host.on(UPGRADE, disconnect=True)
        host.resume_lost = True
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.UPGRADE_ALL)

        assert job.result is not None
        assert job.result.reprobe == ReprobeState.CONFIRMED
        assert job.result.recovered_exit_code is None
        assert "0 updates pending" in job.result.message


class TestUpgradePackage:
    """Tests for single-package upgrades."""

    @pytest.mark.asyncio
    async def test_manager_from_cache(self, make_orchestrator, make_target, connector) -> None:
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING, times=1)
        orchestrator = make_orchestrator([make_target(1, ["apt", "snap"])])
        await run(orchestrator, 1, OperationKind.CHECK)

        job = await run(orchestrator, 1, OperationKind.UPGRADE_PACKAGE, "curl")

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.message == "Upgraded curl"
        assert host.ran("install --only-upgrade -y curl") == 1
        entry = orchestrator.history(1)[0]
        assert entry.manager == "apt"
        assert entry.packages == ["curl"]

    @pytest.mark.asyncio
    async def test_ambiguous_manager(self, make_orchestrator, make_target) -> None:
        orchestrator = make_orchestrator([make_target(1, ["apt", "snap"])])

        job = await run(orchestrator, 1, OperationKind.UPGRADE_PACKAGE, "firefox")

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.UNSUPPORTED

    @pytest.mark.asyncio
    async def test_explicit_manager(self, make_orchestrator, make_target, connector) -> None:
        orchestrator = make_orchestrator([make_target(1, ["apt", "snap"])])

        job = await run(orchestrator, 1, OperationKind.UPGRADE_PACKAGE, "firefox", manager="snap")

        assert job.status == JobStatus.DONE
        assert connector.host(1).ran("snap refresh firefox") == 1


class TestReboot:
    """Tests for reboots."""

    @pytest.mark.asyncio
    async def test_dropped_connection_is_success(self, make_orchestrator, connector) -> None:
        connector.host(1).on("reboot", disconnect=True)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.REBOOT)

        assert job.status == JobStatus.DONE
        assert job.result is not None
        assert job.result.message == "Reboot initiated"
        [entry] = orchestrator.history(1)
        assert entry.manager == "system"
        assert entry.status == HistoryStatus.SUCCESS
        assert orchestrator.cache.get(1).reachability == Reachability.UNREACHABLE  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_reboot_keeps_cached_updates(self, make_orchestrator, connector) -> None:
        host = connector.host(1)
        host.on(LISTING, stdout=APT_LISTING)
        host.on("reboot", hang=True)
        orchestrator = make_orchestrator()
        await run(orchestrator, 1, OperationKind.CHECK)

        job = await run(orchestrator, 1, OperationKind.REBOOT)

        assert job.status == JobStatus.DONE
        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert len(entry.updates) == 3
        assert entry.reachability == Reachability.UNREACHABLE

    @pytest.mark.asyncio
    async def test_reboot_refused(self, make_orchestrator, connector) -> None:
        connector.host(1).on("reboot", stderr="reboot: Operation not permitted", exit_code=1)
        orchestrator = make_orchestrator()

        job = await run(orchestrator, 1, OperationKind.REBOOT)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.COMMAND_FAILED
        assert job.error == "reboot: Operation not permitted"
        assert orchestrator.history(1)[0].status == HistoryStatus.FAILED


class TestCancel:
    """Tests for job cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_running_upgrade(self, make_orchestrator, connector) -> None:
        host = connector.host(1)
        host.on(UPGRADE, gate=asyncio.Event())
        orchestrator = make_orchestrator()

        job_id = orchestrator.submit(1, OperationKind.UPGRADE_ALL)
        await wait_until(lambda: host.ran(UPGRADE) == 1)
        orchestrator.cancel(job_id)
        job = await orchestrator.join(job_id)

        assert job.status == JobStatus.FAILED
        assert job.error_kind == ErrorKind.CANCELLED
        assert job.error is not None
        assert "may still be running" in job.error
        [entry] = orchestrator.history(1)
        assert entry.status == HistoryStatus.FAILED
        assert not orchestrator.governor.is_busy(1)
        assert connector.active_sessions == 0

    @pytest.mark.asyncio
    async def test_cancel_pending(self, make_orchestrator, make_target, connector) -> None:
        gate = asyncio.Event()
        connector.host(1).on(LISTING, gate=gate)
        config = EngineConfig(max_concurrent_sessions=1)
        orchestrator = make_orchestrator([make_target(1), make_target(2)], config=config)

        first = orchestrator.submit(1, OperationKind.CHECK)
        await wait_until(lambda: orchestrator.poll(first).status == JobStatus.RUNNING)
        second = orchestrator.submit(2, OperationKind.CHECK)

        cancelled = orchestrator.cancel(second)

        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error_kind == ErrorKind.CANCELLED
        assert not orchestrator.governor.is_busy(2)
        gate.set()
        await orchestrator.join(first)
        await orchestrator.join(second)
        assert connector.host(2).connect_attempts == 0

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert orchestrator.cancel(job.id).status == JobStatus.DONE

    @pytest.mark.asyncio
    async def test_shutdown_cancels_jobs(self, make_orchestrator, connector) -> None:
        connector.host(1).on(UPGRADE, gate=asyncio.Event())
        orchestrator = make_orchestrator()
        job_id = orchestrator.submit(1, OperationKind.UPGRADE_ALL)
        await wait_until(lambda: connector.host(1).ran(UPGRADE) == 1)

        await orchestrator.shutdown()

        assert orchestrator.poll(job_id).error_kind == ErrorKind.CANCELLED


class TestJobs:
    """Tests for polling and listeners."""

    @pytest.mark.asyncio
    async def test_wait(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        job_id = orchestrator.submit(1, OperationKind.CHECK)

        job = await orchestrator.wait(job_id, interval=0.005, timeout=2)

        assert job.status.is_terminal
        assert job.started_at is not None
        assert job.finished_at is not None

    @pytest.mark.asyncio
    async def test_listener_receives_terminal_jobs(self, make_orchestrator, connector) -> None:
        connector.host(1).unreachable = True
        orchestrator = make_orchestrator()
        seen: list[Job] = []
        orchestrator.add_listener(seen.append)

        job = await run(orchestrator, 1, OperationKind.CHECK)

        assert [j.id for j in seen] == [job.id]
        assert seen[0].status == JobStatus.FAILED


class TestCacheFreshness:
    """Tests for invalidation and re-check."""

    @pytest.mark.asyncio
    async def test_recheck_after_invalidate(self, make_orchestrator, connector) -> None:
        connector.host(1).on(LISTING, stdout=APT_LISTING)
        orchestrator = make_orchestrator()
        await run(orchestrator, 1, OperationKind.CHECK)

        invalidated_at, submitted = orchestrator.recheck_all()

        view = orchestrator.cache_view(1)
        assert view.entry is None
        assert view.is_stale
        await orchestrator.join(submitted[1])  # type: ignore[arg-type]
        entry = orchestrator.cache.get(1)
        assert entry is not None
        assert entry.checked_at >= invalidated_at

    @pytest.mark.asyncio
    async def test_invalidate_all(self, make_orchestrator, make_target) -> None:
        orchestrator = make_orchestrator([make_target(1), make_target(2)])
        for target_id in (1, 2):
            await run(orchestrator, target_id, OperationKind.CHECK)

        orchestrator.invalidate_all()

        assert len(orchestrator.cache) == 0


class TestStreaming:
    """Tests for live output delivery."""

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_replay_in_order(self, make_orchestrator, connector) -> None:
        gate = asyncio.Event()
        connector.host(1).on(LISTING, stdout=APT_LISTING, gate=gate)
        orchestrator = make_orchestrator()

        job_id = orchestrator.submit(1, OperationKind.CHECK)
        await wait_until(
            lambda: any(isinstance(e, OutputEvent) for e in orchestrator.broadcaster.snapshot(1))
        )
        subscription = orchestrator.subscribe(1)
        gate.set()

        events = []
        async with asyncio.timeout(2):
            async for event in subscription:
                events.append(event)
                if isinstance(event, DoneEvent):
                    break
        subscription.close()
        await orchestrator.join(job_id)

        assert events == orchestrator.broadcaster.snapshot(1)
        assert isinstance(events[0], PhaseEvent)
        assert events[0].phase == "Connecting..."
        assert any(isinstance(e, StartedEvent) and e.manager == "apt" for e in events)
        assert events[-1] == DoneEvent(success=True, timestamp=events[-1].timestamp)

    @pytest.mark.asyncio
    async def test_new_operation_resets_channel(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        subscription = orchestrator.subscribe(1)

        await run(orchestrator, 1, OperationKind.CHECK)
        await run(orchestrator, 1, OperationKind.CHECK)
        subscription.close()

        events = []
        while (event := subscription.get_nowait()) is not None:
            events.append(event)

        resets = [i for i, e in enumerate(events) if isinstance(e, ResetEvent)]
        assert len(resets) == 1
        assert isinstance(events[resets[0] - 1], DoneEvent)
        assert not isinstance(orchestrator.broadcaster.snapshot(1)[0], ResetEvent)

    @pytest.mark.asyncio
    async def test_output_is_sanitized(self, make_orchestrator, connector) -> None:
        connector.host(1).on(
            LISTING, chunks=["[sudo] password for admin: \n", APT_LISTING]
        )
        orchestrator = make_orchestrator()

        await run(orchestrator, 1, OperationKind.CHECK)

        outputs = [
            e.data for e in orchestrator.broadcaster.snapshot(1) if isinstance(e, OutputEvent)
        ]
        assert outputs[0].startswith("[sudo] password for ***:")
        assert "admin" not in "".join(outputs)

    @pytest.mark.asyncio
    async def test_subscribe_unknown_target(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()

        with pytest.raises(TargetNotFoundError):
            orchestrator.subscribe(42)
