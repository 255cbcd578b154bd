"""Snap package family.

Official documentation:
- snap: https://snapcraft.io/docs/managing-updates

``snap refresh --list`` does not show installed versions, so the check
prints ``snap list`` first and marks both sections::

    ===INSTALLED===
    Name     Version   Rev    Tracking       Publisher   Notes
    firefox  124.0     4090   latest/stable  mozilla**   -
    ===UPDATES===
    Name     Version   Rev    Size   Publisher   Notes
    firefox  125.0.1   4173   263MB  mozilla**   -

When everything is current the updates section reads ``All snaps up to date.``
"""

from __future__ import annotations

from fleet.models import UpdateRecord

from .base import BasePackageManager, sudo

INSTALLED_MARKER = "===INSTALLED==="
UPDATES_MARKER = "===UPDATES==="


def _rows(section: str) -> list[list[str]]:
    """Split a table into whitespace-separated rows, dropping its header."""
    rows = [line.split() for line in section.strip().splitlines() if line.strip()]
    return [row for row in rows if row[0] != "Name"]


class SnapManager(BasePackageManager):
    """Canonical snap packages."""

    @property
    def name(self) -> str:
        """Return the family name."""
        return "snap"

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "Snap packages"

    def check_commands(self) -> list[str]:
        return [
            f'echo "{INSTALLED_MARKER}"; snap list --color=never 2>/dev/null; '
            f'echo "{UPDATES_MARKER}"; snap refresh --list 2>/dev/null'
        ]

    def parse_check_output(self, stdout: str, stderr: str, exit_code: int) -> list[UpdateRecord]:
        installed_at = stdout.find(INSTALLED_MARKER)
        updates_at = stdout.find(UPDATES_MARKER)

        installed: dict[str, str] = {}
        if installed_at != -1 and updates_at != -1:
            section = stdout[installed_at + len(INSTALLED_MARKER) : updates_at]
            for row in _rows(section):
                if len(row) >= 2:
                    installed[row[0]] = row[1]

        section = stdout[updates_at + len(UPDATES_MARKER) :] if updates_at != -1 else stdout
        records = []
        for row in _rows(section):
            if row[0] == "All" or len(row) < 2:
                continue
            records.append(
                UpdateRecord(
                    package_name=row[0],
                    current_version=installed.get(row[0]),
                    available_version=row[1],
                    manager=self.name,
                    repository="snap",
                )
            )
        return self.normalize(records)

    def upgrade_all_command(self) -> str:
        return sudo("snap refresh") + " 2>&1"

    def package_command(self, package: str) -> str:
        return sudo(f"snap refresh {package}") + " 2>&1"
