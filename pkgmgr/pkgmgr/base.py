"""Base package manager implementation with common functionality."""

from __future__ import annotations

import re
from abc import abstractmethod
from typing import TYPE_CHECKING

import structlog

from fleet.errors import InvalidPackageNameError
from fleet.interfaces import PackageManager

if TYPE_CHECKING:
    from collections.abc import Iterable

    from fleet.models import UpdateRecord

logger = structlog.get_logger(__name__)

# Letters, digits and the punctuation real package names use (libstdc++6,
# python3.11, org.gnome.Platform, perl-Foo@1:2~rc). Nothing a shell expands.
PACKAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+:@~-]{0,255}$")


def sudo(command: str) -> str:
    """Wrap a command so it runs through sudo only when not already root.

    Falls back to running the command directly when sudo is not installed.
    ``sudo -S`` reads the password from stdin when one is supplied.
    """
    return (
        f'if [ "$(id -u)" = "0" ]; then {command}; '
        f"elif command -v sudo >/dev/null 2>&1; then sudo -S {command}; "
        f"else {command}; fi"
    )


def validate_package_name(package: str) -> str:
    """Return the package name if it is safe to put in a shell command.

    Raises:
        InvalidPackageNameError: If the name contains anything else.
    """
    name = package.strip()
    if not PACKAGE_NAME_PATTERN.match(name):
        raise InvalidPackageNameError(f"Invalid package name: {package!r}")
    return name


REBOOT_COMMAND = sudo("reboot")


class BasePackageManager(PackageManager):
    """Base class for package manager families.

    Subclasses provide the commands and a per-line parser. ``parse_check_output``
    drives the parser over every line, skipping lines it does not understand,
    and normalizes the result: one record per package, sorted by name, so
    parsing the same output twice gives the same records.
    """

    def parse_check_output(self, stdout: str, stderr: str, exit_code: int) -> list[UpdateRecord]:
        """Parse the listing output into update records."""
        return self.normalize(self.parse_lines(stdout, stderr, exit_code))

    def effective_exit_code(self, stdout: str, exit_code: int | None) -> int | None:
        """Exit status that decides whether the listing is valid.

        Families whose check is a compound shell command report the status of
        the listing tool in the output and override this.
        """
        return exit_code

    def parse_lines(self, stdout: str, stderr: str, exit_code: int) -> Iterable[UpdateRecord]:
        """Yield a record for every line ``parse_line`` understands."""
        for raw in stdout.splitlines():
            line = raw.strip()
            if not line:
                continue
            record = self.parse_line(line)
            if record is None:
                logger.debug("unparsed_line", manager=self.name, line=line[:200])
                continue
            yield record

    def parse_line(self, line: str) -> UpdateRecord | None:
        """Parse one line of listing output, or return None to skip it."""
        return None

    def normalize(self, records: Iterable[UpdateRecord]) -> list[UpdateRecord]:
        """Deduplicate by package (last one wins) and sort by name."""
        unique: dict[tuple[str, str], UpdateRecord] = {}
        for record in records:
            unique[(record.manager, record.package_name)] = record
        return sorted(unique.values(), key=lambda r: (r.package_name, r.architecture or ""))

    def upgrade_package_command(self, package: str) -> str:
        """Validate the name, then build the family's single-package command."""
        return self.package_command(validate_package_name(package))

    @abstractmethod
    def package_command(self, package: str) -> str:
        """Command upgrading one already validated package."""
        ...
