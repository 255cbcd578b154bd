"""Update-Fleet package managers.

This package contains the package manager families the engine drives on
remote targets, and the adapter that plugs them into the engine.
"""

from __future__ import annotations

from pkgmgr.adapter import PackageManagerAdapter
from pkgmgr.apt import AptManager
from pkgmgr.base import REBOOT_COMMAND, BasePackageManager, sudo, validate_package_name
from pkgmgr.detector import detect_managers
from pkgmgr.dnf import DnfManager
from pkgmgr.flatpak import FlatpakManager
from pkgmgr.pacman import PacmanManager
from pkgmgr.registry import ManagerRegistry, get_registry, register_builtin_managers
from pkgmgr.snap import SnapManager
from pkgmgr.sysinfo import SYSTEM_INFO_COMMAND, parse_system_info
from pkgmgr.yum import YumManager

__all__ = [
    "REBOOT_COMMAND",
    "SYSTEM_INFO_COMMAND",
    "AptManager",
    "BasePackageManager",
    "DnfManager",
    "FlatpakManager",
    "ManagerRegistry",
    "PackageManagerAdapter",
    "PacmanManager",
    "SnapManager",
    "YumManager",
    "detect_managers",
    "get_registry",
    "parse_system_info",
    "register_builtin_managers",
    "sudo",
    "validate_package_name",
]
