"""YUM package manager family (RHEL/CentOS 7 and older).

``yum check-update`` prints the same listing as dnf and uses the same exit
statuses, so parsing is shared with :mod:`pkgmgr.dnf`. YUM has no
full-upgrade equivalent.
"""

from __future__ import annotations

from .base import sudo
from .dnf import DnfManager


class YumManager(DnfManager):
    """RHEL/CentOS YUM."""

    tool = "yum"

    @property
    def description(self) -> str:
        """Return a human-readable description."""
        return "RHEL/CentOS YUM package manager"

    def upgrade_all_command(self) -> str:
        return sudo("yum update -y") + " 2>&1"

    def full_upgrade_command(self) -> str | None:
        return None

    def package_command(self, package: str) -> str:
        return sudo(f"yum update -y {package}") + " 2>&1"
