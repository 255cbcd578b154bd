"""Registry of package manager families."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .apt import AptManager
from .dnf import DnfManager
from .flatpak import FlatpakManager
from .pacman import PacmanManager
from .snap import SnapManager
from .yum import YumManager

if TYPE_CHECKING:
    from fleet.interfaces import PackageManager

logger = structlog.get_logger(__name__)


class ManagerRegistry:
    """Registry of package manager families by name.

    Families are registered as classes; lookups return a fresh instance so
    callers never share state.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._managers: dict[str, type[PackageManager]] = {}

    def register(self, manager_class: type[PackageManager]) -> None:
        """Register a family class.

        Args:
            manager_class: The family class to register.
        """
        name = manager_class().name
        self._managers[name] = manager_class
        logger.debug("manager_registered", manager=name)

    def unregister(self, name: str) -> bool:
        """Unregister a family by name.

        Returns:
            True if the family was unregistered, False if not found.
        """
        if name in self._managers:
            del self._managers[name]
            logger.debug("manager_unregistered", manager=name)
            return True
        return False

    def get(self, name: str) -> PackageManager | None:
        """Get a family instance by name, or None if not registered."""
        manager_class = self._managers.get(name)
        if manager_class:
            return manager_class()
        return None

    def get_all(self) -> list[PackageManager]:
        """Get instances of all registered families, in registration order."""
        return [cls() for cls in self._managers.values()]

    def list_names(self) -> list[str]:
        """List all registered family names."""
        return list(self._managers.keys())

    def __contains__(self, name: object) -> bool:
        return name in self._managers


# Global registry instance
_registry: ManagerRegistry | None = None


def get_registry() -> ManagerRegistry:
    """Get the global registry with the built-in families registered."""
    global _registry
    if _registry is None:
        _registry = register_builtin_managers(ManagerRegistry())
    return _registry


def register_builtin_managers(registry: ManagerRegistry) -> ManagerRegistry:
    """Register apt, dnf, yum, pacman, flatpak and snap.

    Detection runs in registration order, so system families come before
    the application stores.
    """
    registry.register(AptManager)
    registry.register(DnfManager)
    registry.register(YumManager)
    registry.register(PacmanManager)
    registry.register(FlatpakManager)
    registry.register(SnapManager)
    return registry
