"""Detection of the package manager families installed on a target."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from fleet.errors import CommandTimeoutError

if TYPE_CHECKING:
    from fleet.interfaces import RemoteSession
    from fleet.models import Target

    from .registry import ManagerRegistry

logger = structlog.get_logger(__name__)

DETECT_TIMEOUT = 10.0

# When both are present the first makes the second redundant
SUPERSEDES = {"dnf": "yum"}


async def detect_managers(
    session: RemoteSession,
    registry: ManagerRegistry,
    target: Target | None = None,
    timeout: float = DETECT_TIMEOUT,
) -> list[str]:
    """Probe the target for every registered family.

    Each family's ``detect_command`` prints ``found`` when its executable is
    on the PATH. A probe that times out counts as not found.

    Args:
        session: Open session to the target.
        registry: Families to probe, in order.
        target: The target, for logging.
        timeout: Seconds allowed per probe.

    Returns:
        Names of the families found, in registry order.
    """
    log = logger.bind(target=target.id if target else None)
    detected: list[str] = []
    for manager in registry.get_all():
        try:
            result = await session.run(manager.detect_command, timeout=timeout)
        except CommandTimeoutError:
            log.warning("detect_timeout", manager=manager.name)
            continue
        if result.exit_code == 0 and "found" in result.stdout:
            detected.append(manager.name)

    for preferred, redundant in SUPERSEDES.items():
        if preferred in detected and redundant in detected:
            detected.remove(redundant)

    log.info("managers_detected", managers=detected)
    return detected
