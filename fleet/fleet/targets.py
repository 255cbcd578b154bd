"""In-memory target store backed by the configuration file."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import structlog

from .errors import TargetNotFoundError
from .interfaces import TargetStore

if TYPE_CHECKING:
    from .models import Target

logger = structlog.get_logger(__name__)


class InMemoryTargetStore(TargetStore):
    """Serves targets from memory.

    Detected package managers are kept for the lifetime of the process only;
    persisting them is the configuration store's job.
    """

    def __init__(self, targets: list[Target] | None = None) -> None:
        self._targets: dict[int, Target] = {t.id: t for t in targets or []}
        self._lock = threading.Lock()

    def get(self, target_id: int) -> Target:
        with self._lock:
            target = self._targets.get(target_id)
        if target is None:
            raise TargetNotFoundError(target_id)
        return target

    def list(self) -> list[Target]:
        with self._lock:
            return sorted(self._targets.values(), key=lambda t: t.id)

    def add(self, target: Target) -> None:
        """Add or replace a target."""
        with self._lock:
            self._targets[target.id] = target

    def find(self, name_or_id: str) -> Target:
        """Look a target up by name or numeric id.

        Raises:
            TargetNotFoundError: If nothing matches.
        """
        with self._lock:
            for target in self._targets.values():
                if target.name == name_or_id:
                    return target
        if name_or_id.isdigit():
            return self.get(int(name_or_id))
        raise TargetNotFoundError(name_or_id)

    def update_detected(self, target_id: int, managers: list[str]) -> Target:
        with self._lock:
            target = self._targets.get(target_id)
            if target is None:
                raise TargetNotFoundError(target_id)
            updated = target.model_copy(update={"detected_managers": list(managers)})
            self._targets[target_id] = updated
        logger.info("managers_detected", target=target_id, managers=managers)
        return updated
