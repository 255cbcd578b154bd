"""Periodic update checks.

The checker wakes up on an interval and submits a check for every target
whose cache entry is stale. It never waits for the checks it submits.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from .errors import TargetBusyError
from .models import OperationKind

if TYPE_CHECKING:
    from .orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)


class PeriodicChecker:
    """Submits checks for stale targets on a fixed interval."""

    def __init__(
        self,
        orchestrator: UpdateOrchestrator,
        interval: float = 900.0,
        initial_delay: float = 0.0,
    ) -> None:
        """Initialize the checker.

        Args:
            orchestrator: Engine to submit checks to.
            interval: Seconds between wake-ups.
            initial_delay: Seconds before the first wake-up.
        """
        self.orchestrator = orchestrator
        self.interval = interval
        self.initial_delay = initial_delay
        self._task: asyncio.Task[None] | None = None
        self._log = logger.bind(component="periodic_checker")

    @property
    def running(self) -> bool:
        """Whether the background loop is running."""
        return self._task is not None and not self._task.done()

    def run_once(self) -> list[str]:
        """Submit checks for stale targets, skipping busy ones.

        Returns:
            Ids of the submitted jobs.
        """
        target_ids = [target.id for target in self.orchestrator.targets.list()]
        stale = self.orchestrator.cache.stale_targets(target_ids)
        submitted: list[str] = []
        skipped = 0
        for target_id in stale:
            try:
                submitted.append(self.orchestrator.submit(target_id, OperationKind.CHECK))
            except TargetBusyError:
                skipped += 1
        self._log.info(
            "periodic_check",
            targets=len(target_ids),
            stale=len(stale),
            submitted=len(submitted),
            busy=skipped,
        )
        return submitted

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="periodic-checker")
        self._log.info("periodic_checker_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background loop. Submitted checks keep running."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._log.info("periodic_checker_stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                self.run_once()
            except Exception as e:
                self._log.exception("periodic_check_failed", error=str(e))
            await asyncio.sleep(self.interval)
