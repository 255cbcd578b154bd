"""Flatpak application family.

Official documentation:
- Flatpak: https://docs.flatpak.org/en/latest/flatpak-command-reference.html

``flatpak remote-ls --updates`` with explicit columns prints one
tab-separated line per pending update: name, application id, version,
branch, origin. The version column is empty for many runtimes.
"""

from __future__ import annotations

from fleet.models import UpdateRecord

from .base import BasePackageManager


class FlatpakManager(BasePackageManager):
    """Flatpak applications and runtimes."""

    @property
    def name(self) -> str:
        """Return the family name."""
        return "flatpak"

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "Flatpak applications"

    def check_commands(self) -> list[str]:
        return [
            "flatpak remote-ls --updates --columns=name,application,version,branch,origin 2>/dev/null"
        ]

    def parse_line(self, line: str) -> UpdateRecord | None:
        parts = [part.strip() for part in line.split("\t")]
        if len(parts) < 3:
            return None
        name, app_id, version = parts[0], parts[1], parts[2]
        if name == "Name" and app_id.startswith("Application"):
            return None
        origin = parts[4] if len(parts) > 4 else ""
        return UpdateRecord(
            package_name=app_id or name,
            available_version=version or "available",
            manager=self.name,
            repository=origin or None,
        )

    def upgrade_all_command(self) -> str:
        return "flatpak update -y --noninteractive 2>&1"

    def package_command(self, package: str) -> str:
        return f"flatpak update -y --noninteractive {package} 2>&1"
