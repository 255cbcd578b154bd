"""Pacman package manager family (Arch Linux and derivatives).

Official documentation:
- pacman: https://man.archlinux.org/man/pacman.8

``pacman -Sy`` syncs the databases, then ``pacman -Qu`` lists pending
updates as ``name old -> new``.
"""

from __future__ import annotations

import re

from fleet.models import UpdateRecord

from .base import BasePackageManager, sudo

LINE_PATTERN = re.compile(r"^(\S+)\s+(\S+)\s+->\s+(\S+)")


class PacmanManager(BasePackageManager):
    """Arch Linux pacman."""

    @property
    def name(self) -> str:
        """Return the family name."""
        return "pacman"

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "Arch Linux pacman package manager"

    def check_commands(self) -> list[str]:
        return [
            sudo("pacman -Sy --noconfirm") + " 2>&1",
            "pacman -Qu 2>/dev/null",
        ]

    def check_labels(self) -> list[str]:
        return ["Syncing package databases...", "Listing available updates..."]

    def check_succeeded(self, exit_code: int | None) -> bool:
        # pacman -Qu exits 1 when nothing is upgradable
        return exit_code in (0, 1)

    def parse_line(self, line: str) -> UpdateRecord | None:
        match = LINE_PATTERN.match(line)
        if match is None:
            return None
        name, current, new_version = match.groups()
        return UpdateRecord(
            package_name=name,
            current_version=current,
            available_version=new_version,
            manager=self.name,
        )

    def upgrade_all_command(self) -> str:
        return sudo("pacman -Syu --noconfirm") + " 2>&1"

    def package_command(self, package: str) -> str:
        return sudo(f"pacman -S --noconfirm {package}") + " 2>&1"
