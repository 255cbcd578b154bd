"""APT package manager family.

Debian-based distributions (Debian, Ubuntu, Linux Mint, etc.).

Official documentation:
- APT: https://wiki.debian.org/Apt
- apt-get man page: https://manpages.debian.org/bookworm/apt/apt-get.8.en.html

Check:
- ``apt-get update -qq`` refreshes the package lists
- ``apt list --upgradable`` prints one line per pending update::

    curl/jammy-updates 7.81.0-1ubuntu1.18 amd64 [upgradable from: 7.81.0-1ubuntu1.16]

Updates from a ``*-security`` pocket are flagged as security updates.

``-o DPkg::Lock::Timeout=60`` makes apt-get wait for the dpkg lock held by
unattended-upgrades instead of failing immediately.
"""

from __future__ import annotations

import re

from fleet.models import UpdateRecord

from .base import BasePackageManager, sudo

LINE_PATTERN = re.compile(r"^(\S+?)/(\S+)\s+(\S+)\s+(\S+)\s+\[upgradable from:\s+(\S+)\]")

LOCK_WAIT = "-o DPkg::Lock::Timeout=60"
NONINTERACTIVE = "export DEBIAN_FRONTEND=noninteractive; "


class AptManager(BasePackageManager):
    """Debian/Ubuntu APT."""

    @property
    def name(self) -> str:
        """Return the family name."""
        return "apt"

    @property
    def binary(self) -> str:
        return "apt-get"

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "Debian/Ubuntu APT package manager"

    def check_commands(self) -> list[str]:
        return [
            sudo(f"apt-get {LOCK_WAIT} update -qq") + " 2>&1",
            "DEBIAN_FRONTEND=noninteractive apt list --upgradable 2>/dev/null | tail -n +2",
        ]

    def check_labels(self) -> list[str]:
        return ["Fetching package lists...", "Listing available updates..."]

    def parse_line(self, line: str) -> UpdateRecord | None:
        match = LINE_PATTERN.match(line)
        if match is None:
            return None
        name, repository, new_version, arch, current = match.groups()
        return UpdateRecord(
            package_name=name,
            current_version=current,
            available_version=new_version,
            manager=self.name,
            architecture=arch,
            repository=repository,
            is_security="security" in repository.lower(),
        )

    def upgrade_all_command(self) -> str:
        return NONINTERACTIVE + sudo(f"apt-get {LOCK_WAIT} upgrade -y") + " 2>&1"

    def full_upgrade_command(self) -> str:
        """``full-upgrade`` may install or remove packages to resolve dependencies."""
        return NONINTERACTIVE + sudo(f"apt-get {LOCK_WAIT} full-upgrade -y") + " 2>&1"

    def package_command(self, package: str) -> str:
        return (
            NONINTERACTIVE
            + sudo(f"apt-get {LOCK_WAIT} install --only-upgrade -y {package}")
            + " 2>&1"
        )
