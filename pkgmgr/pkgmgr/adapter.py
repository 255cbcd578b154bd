"""Runs package manager families over a remote session.

The adapter is the engine's only view of package managers: it detects
families, runs their check commands and parses the listing, and starts
upgrades as detached remote commands so they survive a dropped session.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from fleet.errors import CommandTimeoutError, UnsupportedOperationError
from fleet.interfaces import Listing, UpdateAdapter

from .base import REBOOT_COMMAND, validate_package_name
from .detector import detect_managers
from .registry import ManagerRegistry, register_builtin_managers
from .sysinfo import SYSTEM_INFO_COMMAND, parse_system_info

if TYPE_CHECKING:
    from fleet.interfaces import OutputCallback, PackageManager, RemoteSession, StartedCallback
    from fleet.models import SystemInfo, Target
    from fleet.remote import CommandResult

logger = structlog.get_logger(__name__)


class PackageManagerAdapter(UpdateAdapter):
    """Adapter backed by a :class:`ManagerRegistry`."""

    def __init__(self, registry: ManagerRegistry | None = None) -> None:
        """Initialize the adapter.

        Args:
            registry: Families to use. The built-in families when omitted.
        """
        self.registry = registry or register_builtin_managers(ManagerRegistry())
        self._log = logger.bind(component="package_manager_adapter")

    def manager(self, name: str) -> PackageManager:
        """Return the family instance.

        Raises:
            UnsupportedOperationError: If the family is not registered.
        """
        manager = self.registry.get(name)
        if manager is None:
            raise UnsupportedOperationError(f"Unknown package manager: {name}")
        return manager

    async def detect(self, session: RemoteSession, target: Target) -> list[str]:
        return await detect_managers(session, self.registry, target)

    def active_managers(self, target: Target) -> list[str]:
        return [name for name in target.active_managers if name in self.registry]

    def supports_full_upgrade(self, manager: str) -> bool:
        return manager in self.registry and self.manager(manager).supports_full_upgrade

    def validate_package_name(self, package: str) -> str:
        return validate_package_name(package)

    def check_command(self, manager: str) -> str:
        return " && ".join(self.manager(manager).check_commands())

    def reboot_command(self) -> str:
        return REBOOT_COMMAND

    async def system_info(
        self, session: RemoteSession, *, timeout: float | None = None
    ) -> SystemInfo | None:
        """Run the host facts command and parse it.

        Missing tools only blank their own fields. A timeout, a dropped
        connection or a failing shell give None.
        """
        try:
            result = await session.run(SYSTEM_INFO_COMMAND, timeout=timeout)
        except CommandTimeoutError:
            self._log.warning("system_info_timeout", timeout=timeout)
            return None
        if not result.success:
            self._log.warning(
                "system_info_failed", exit_code=result.exit_code, disconnected=result.disconnected
            )
            return None
        return parse_system_info(result.stdout)

    async def list_updates(
        self,
        session: RemoteSession,
        manager: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
        on_started: StartedCallback | None = None,
    ) -> Listing:
        """Run the family's check commands in order and parse the last one.

        A failing refresh step (for example ``apt-get update`` hitting an
        unreachable mirror) is logged and the listing still runs against
        the old metadata. The listing's own exit status decides ``ok``.
        A dropped connection stops the sequence.
        """
        family = self.manager(manager)
        commands = family.check_commands()
        if not commands:
            raise UnsupportedOperationError(f"{manager} has no check command")
        labels = family.check_labels()
        log = self._log.bind(manager=manager)

        for index, command in enumerate(commands):
            if on_started is not None:
                on_started(command, labels[index] if index < len(labels) else None)
            result = await session.run(
                command, timeout=timeout, sudo_password=sudo_password, on_output=on_output
            )
            if result.disconnected:
                log.warning("check_disconnected", step=index + 1)
                return Listing(manager=manager, command=" && ".join(commands), result=result, ok=False)
            if index < len(commands) - 1 and not result.success:
                log.warning("check_step_failed", step=index + 1, exit_code=result.exit_code)

        exit_code = family.effective_exit_code(result.stdout, result.exit_code)
        if not family.check_succeeded(exit_code):
            log.warning("check_listing_failed", exit_code=exit_code)
            return Listing(manager=manager, command=" && ".join(commands), result=result, ok=False)

        updates = family.parse_check_output(result.stdout, result.stderr, exit_code or 0)
        log.debug("check_parsed", updates=len(updates))
        return Listing(manager=manager, updates=updates, command=" && ".join(commands), result=result)

    async def upgrade_all(
        self,
        session: RemoteSession,
        manager: str,
        *,
        full: bool = False,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
        on_started: StartedCallback | None = None,
    ) -> CommandResult:
        family = self.manager(manager)
        if full:
            command = family.full_upgrade_command()
            if command is None:
                raise UnsupportedOperationError(f"{manager} has no full upgrade")
        else:
            command = family.upgrade_all_command()

        label = f"Running full upgrade ({manager})..." if full else f"Upgrading {manager} packages..."
        return await self._run_detached(
            session, command, label, timeout, sudo_password, on_output, on_started
        )

    async def upgrade_package(
        self,
        session: RemoteSession,
        manager: str,
        package: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
        on_started: StartedCallback | None = None,
    ) -> CommandResult:
        command = self.manager(manager).upgrade_package_command(package)
        return await self._run_detached(
            session, command, f"Upgrading {package}...", timeout, sudo_password, on_output, on_started
        )

    async def _run_detached(
        self,
        session: RemoteSession,
        command: str,
        label: str,
        timeout: float | None,
        sudo_password: str | None,
        on_output: OutputCallback | None,
        on_started: StartedCallback | None,
    ) -> CommandResult:
        if on_started is not None:
            on_started(command, label)
        result = await session.run_detached(
            command, timeout=timeout, sudo_password=sudo_password, on_output=on_output
        )
        self._log.info(
            "upgrade_command_finished",
            exit_code=result.exit_code,
            disconnected=result.disconnected,
        )
        return result
