"""Core interfaces for the update engine.

This module defines abstract base classes for the collaborators the engine
depends on: remote sessions, package manager families, the target store
and the history store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Self

if TYPE_CHECKING:
    from types import TracebackType

    from .models import HistoryEntry, HistoryStatus, SystemInfo, Target, UpdateRecord
    from .remote import CommandResult, DetachedHandle

OutputCallback = Callable[[str, str], None]
"""Called with ``(text, stream)`` for every chunk of remote output."""


class RemoteSession(ABC):
    """An open SSH session to one target."""

    @abstractmethod
    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a command attached to this session.

        Raises:
            CommandTimeoutError: If the command exceeds the timeout.
        """
        ...

    @abstractmethod
    async def run_detached(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        """Run a command that keeps running if this session drops.

        The returned result has ``disconnected=True`` and a ``handle`` when
        monitoring was lost before the exit code arrived.
        """
        ...

    @abstractmethod
    async def resume(
        self,
        handle: DetachedHandle,
        *,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult | None:
        """Collect the outcome of a detached command from a new session.

        Returns:
            The recovered result, or None if the remote bookkeeping files are
            gone (for example ``/tmp`` was cleared by a reboot).
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the session."""
        ...

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


class RemoteConnector(ABC):
    """Opens sessions to targets."""

    @abstractmethod
    async def connect(self, target: Target) -> RemoteSession:
        """Connect to a target.

        Raises:
            ConnectionFailedError: On network, authentication or timeout failure.
        """
        ...


class PackageManager(ABC):
    """A package manager family (apt, dnf, ...)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the family name."""
        ...

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return self.name

    @property
    def binary(self) -> str:
        """Executable whose presence identifies the family."""
        return self.name

    @property
    def detect_command(self) -> str:
        """Shell command printing ``found`` when the family is installed."""
        return f"command -v {self.binary} >/dev/null 2>&1 && echo found"

    @abstractmethod
    def check_commands(self) -> list[str]:
        """Commands run in order to list pending updates.

        The output of the last command is parsed.
        """
        ...

    def check_labels(self) -> list[str]:
        """Labels shown as phases for each check command."""
        commands = self.check_commands()
        if len(commands) == 1:
            return ["Checking for updates..."]
        return [f"Step {i}/{len(commands)}..." for i in range(1, len(commands) + 1)]

    @abstractmethod
    def parse_check_output(self, stdout: str, stderr: str, exit_code: int) -> list[UpdateRecord]:
        """Parse the listing output into update records."""
        ...

    def check_succeeded(self, exit_code: int | None) -> bool:
        """Whether the listing command's exit status means the listing is valid."""
        return exit_code == 0

    @abstractmethod
    def upgrade_all_command(self) -> str:
        """Command upgrading every package of this family."""
        ...

    def full_upgrade_command(self) -> str | None:
        """Command for a full upgrade that may add or remove packages."""
        return None

    @property
    def supports_full_upgrade(self) -> bool:
        """Whether a distinct full-upgrade command exists."""
        return self.full_upgrade_command() is not None

    @abstractmethod
    def upgrade_package_command(self, package: str) -> str:
        """Command upgrading a single package."""
        ...


class TargetStore(ABC):
    """Read access to configured targets."""

    @abstractmethod
    def get(self, target_id: int) -> Target:
        """Return a target.

        Raises:
            TargetNotFoundError: If the id is unknown.
        """
        ...

    @abstractmethod
    def list(self) -> list[Target]:
        """Return all targets."""
        ...

    @abstractmethod
    def update_detected(self, target_id: int, managers: list[str]) -> Target:
        """Record the package manager families detected on a target."""
        ...


class HistoryStore(ABC):
    """Append-only audit log of operations."""

    @abstractmethod
    def start(self, entry: HistoryEntry) -> int:
        """Insert a ``started`` entry and return its id."""
        ...

    @abstractmethod
    def finish(
        self,
        entry_id: int,
        status: HistoryStatus,
        *,
        output: str | None = None,
        error: str | None = None,
        package_count: int | None = None,
        packages: list[str] | None = None,
    ) -> HistoryEntry:
        """Finalize a ``started`` entry.

        Raises:
            HistoryError: If the entry does not exist or is already final.
        """
        ...

    @abstractmethod
    def append(self, entry: HistoryEntry) -> int:
        """Insert an already final entry and return its id."""
        ...

    @abstractmethod
    def get(self, entry_id: int) -> HistoryEntry | None:
        """Return one entry."""
        ...

    @abstractmethod
    def list(self, target_id: int, limit: int = 50) -> list[HistoryEntry]:
        """Return entries for a target, newest first."""
        ...


@dataclass
class Listing:
    """Updates found for one package manager family.

    Attributes:
        manager: Family name
        updates: Parsed records, sorted by package name
        command: The check commands, joined for display
        result: Result of the final (listing) command
        ok: Whether the listing command completed normally
    """

    manager: str
    updates: list[UpdateRecord] = field(default_factory=list)
    command: str = ""
    result: CommandResult | None = None
    ok: bool = True


StartedCallback = Callable[[str, str | None], None]
"""Called with the command line and an optional phase label before a command runs."""


class UpdateAdapter(ABC):
    """Runs package manager families on an open session."""

    @abstractmethod
    async def detect(self, session: RemoteSession, target: Target) -> list[str]:
        """Return the families present on the target."""
        ...

    @abstractmethod
    def active_managers(self, target: Target) -> list[str]:
        """Detected families minus disabled and unknown ones."""
        ...

    @abstractmethod
    def supports_full_upgrade(self, manager: str) -> bool:
        """Whether the family has a distinct full-upgrade command."""
        ...

    @abstractmethod
    def validate_package_name(self, package: str) -> str:
        """Return the name if it is safe to use in a command.

        Raises:
            InvalidPackageNameError: If it is not.
        """
        ...

    @abstractmethod
    def check_command(self, manager: str) -> str:
        """The family's check commands joined for display and history."""
        ...

    @abstractmethod
    def reboot_command(self) -> str:
        """Command rebooting the target."""
        ...

    @abstractmethod
    async def system_info(
        self, session: RemoteSession, *, timeout: float | None = None
    ) -> SystemInfo | None:
        """Gather host facts, including whether a reboot is required.

        Returns:
            None when the command did not complete.
        """
        ...

    @abstractmethod
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
        """Run the family's check commands and parse the listing."""
        ...

    @abstractmethod
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
        """Upgrade every package of the family, detached."""
        ...

    @abstractmethod
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
        """Upgrade a single package, detached."""
        ...
