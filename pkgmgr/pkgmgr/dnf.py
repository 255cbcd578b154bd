"""DNF package manager family.

Fedora, RHEL 8+ and derivatives.

Official documentation:
- DNF: https://dnf.readthedocs.io/en/latest/command_ref.html

``dnf check-update`` exits 100 when updates are available, 0 when there
are none and 1 on error. Its listing has no installed version, so the
check command looks those up with ``rpm -q`` in the same round trip and
prints them after a separator, followed by the real exit status::

    bash.x86_64        5.2.26-1.fc40      updates
    ---INSTALLED---
    bash.x86_64<TAB>5.2.21-1.fc40
    EXIT:100
"""

from __future__ import annotations

import re

from fleet.models import UpdateRecord

from .base import BasePackageManager, sudo

INSTALLED_MARKER = "---INSTALLED---"
EXIT_MARKER = "EXIT:"
UPDATES_AVAILABLE = 100

# Architecture follows the last dot (python3.11.x86_64)
LINE_PATTERN = re.compile(r"^(\S+)\.(\S+?)\s+(\S+)\s+(\S+)")
SKIPPED_PREFIXES = ("Last metadata", "Obsoleting")


def build_check_command(tool: str) -> str:
    """Build the combined check and installed-version lookup for dnf or yum."""
    return (
        f"updates=$({tool} check-update --quiet 2>/dev/null); rc=$?; "
        'echo "$updates"; '
        f'echo "{INSTALLED_MARKER}"; '
        "if [ $rc -eq 100 ] && command -v rpm >/dev/null 2>&1; then "
        "echo \"$updates\" | awk 'NF>=3{print $1}' | "
        "xargs -r rpm -q --qf '%{NAME}.%{ARCH}\\t%{EPOCH}:%{VERSION}-%{RELEASE}\\n' 2>/dev/null | "
        "sed 's/\\t(none):/\\t/'; "
        "fi; "
        f'echo "{EXIT_MARKER}$rc"'
    )


def split_check_output(stdout: str, exit_code: int | None) -> tuple[str, dict[str, str], int | None]:
    """Split combined check output into listing, installed versions and exit status.

    Returns:
        The listing section, installed versions keyed by ``name.arch``, and the
        exit status of ``check-update`` (taken from the trailing marker when present).
    """
    lines = stdout.rstrip().splitlines()
    if lines and lines[-1].startswith(EXIT_MARKER):
        try:
            exit_code = int(lines[-1][len(EXIT_MARKER) :])
        except ValueError:
            pass
        lines = lines[:-1]

    text = "\n".join(lines)
    listing, _, installed_section = text.partition(INSTALLED_MARKER)
    installed: dict[str, str] = {}
    for raw in installed_section.splitlines():
        key, sep, version = raw.strip().partition("\t")
        if sep and key and version:
            installed[key] = version
    return listing, installed, exit_code


class DnfManager(BasePackageManager):
    """Fedora/RHEL DNF."""

    tool = "dnf"

    @property
    def name(self) -> str:
        """Return the family name."""
        return self.tool

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "Fedora/RHEL DNF package manager"

    def check_commands(self) -> list[str]:
        return [build_check_command(self.tool)]

    def check_succeeded(self, exit_code: int | None) -> bool:
        """Exit 100 means updates are available, not failure."""
        return exit_code in (0, UPDATES_AVAILABLE)

    def effective_exit_code(self, stdout: str, exit_code: int | None) -> int | None:
        """Exit status of ``check-update`` itself, read from the trailing marker."""
        return split_check_output(stdout, exit_code)[2]

    def parse_check_output(self, stdout: str, stderr: str, exit_code: int) -> list[UpdateRecord]:
        listing, installed, exit_code = split_check_output(stdout, exit_code)
        if not self.check_succeeded(exit_code):
            return []

        records = []
        for raw in listing.splitlines():
            line = raw.strip()
            if not line or line.startswith(SKIPPED_PREFIXES):
                continue
            match = LINE_PATTERN.match(line)
            if match is None:
                continue
            name, arch, new_version, repository = match.groups()
            records.append(
                UpdateRecord(
                    package_name=name,
                    current_version=installed.get(f"{name}.{arch}"),
                    available_version=new_version,
                    manager=self.name,
                    architecture=arch,
                    repository=repository,
                )
            )
        return self.normalize(records)

    def upgrade_all_command(self) -> str:
        return sudo("dnf upgrade -y") + " 2>&1"

    def full_upgrade_command(self) -> str | None:
        """``distro-sync`` also downgrades packages to the repository versions."""
        return sudo("dnf distro-sync -y") + " 2>&1"

    def package_command(self, package: str) -> str:
        return sudo(f"dnf upgrade -y {package}") + " 2>&1"
