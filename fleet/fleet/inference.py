"""Outcome inference for commands that may lose their connection.

An upgrade can reboot the host it runs on. When the transport drops before
the exit status arrives, the outcome is ambiguous: it is recorded as a
warning and the target is re-probed until it answers again or the re-probe
times out. The re-probe never rewrites the recorded warning.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from .errors import ConnectionFailedError, FleetError
from .models import HistoryStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .interfaces import RemoteConnector, RemoteSession
    from .models import Target
    from .remote import CommandResult, DetachedHandle

logger = structlog.get_logger(__name__)


def classify(result: CommandResult) -> HistoryStatus:
    """Classify a command result.

    - An exit status decides directly: 0 is success, anything else failed.
    - A dropped connection without an exit status is a warning.
    """
    if result.exit_code is not None:
        return HistoryStatus.SUCCESS if result.exit_code == 0 else HistoryStatus.FAILED
    if result.disconnected:
        return HistoryStatus.WARNING
    return HistoryStatus.FAILED


@dataclass
class ReprobeResult:
    """Outcome of a re-probe.

    Attributes:
        session: Open session to the target, or None if it never came back
        attempts: Connection attempts made
        elapsed: Seconds spent re-probing
        recovered_exit_code: Exit status read from the detached command's
            exit file, if it survived
        state_lost: The detached bookkeeping files were gone (e.g. /tmp was
            cleared by the reboot)
    """

    session: RemoteSession | None
    attempts: int
    elapsed: float
    recovered_exit_code: int | None = None
    state_lost: bool = False

    @property
    def reachable(self) -> bool:
        return self.session is not None


class RebootInference:
    """Reconnects to a target after an ambiguous disconnect."""

    def __init__(
        self,
        connector: RemoteConnector,
        interval: float = 15.0,
        timeout: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the re-probe policy.

        Args:
            connector: Opens new sessions.
            interval: Seconds between connection attempts.
            timeout: Give up after this many seconds; the warning then
                becomes the permanent outcome.
            sleep: Awaitable delay, replaceable in tests.
            clock: Monotonic time source.
        """
        self.connector = connector
        self.interval = interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def reconnect(self, target: Target) -> tuple[RemoteSession | None, int]:
        """Try to connect every ``interval`` seconds until ``timeout``.

        The first attempt is made after one interval, so that a host that
        is about to reboot is not caught before it goes down.

        Returns:
            The session (or None) and the number of attempts.
        """
        log = logger.bind(target=target.id)
        deadline = self._clock() + self.timeout
        attempts = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                log.warning("reprobe_gave_up", attempts=attempts, timeout=self.timeout)
                return None, attempts
            await self._sleep(min(self.interval, remaining))
            attempts += 1
            try:
                session = await self.connector.connect(target)
            except ConnectionFailedError as e:
                log.debug("reprobe_attempt_failed", attempt=attempts, error=str(e))
                continue
            log.info("reprobe_reconnected", attempts=attempts)
            return session, attempts

    async def reprobe(
        self,
        target: Target,
        handle: DetachedHandle | None = None,
        resume_timeout: float | None = None,
    ) -> ReprobeResult:
        """Reconnect and recover what can be recovered of the detached command.

        The caller owns (and must close) the returned session.
        """
        started = self._clock()
        session, attempts = await self.reconnect(target)
        result = ReprobeResult(
            session=session, attempts=attempts, elapsed=self._clock() - started
        )
        if session is None or handle is None:
            return result

        try:
            recovered = await session.resume(handle, timeout=resume_timeout)
        except FleetError as e:
            logger.warning("reprobe_resume_failed", target=target.id, error=str(e))
            return result

        if recovered is None:
            result.state_lost = True
        else:
            result.recovered_exit_code = recovered.exit_code
        logger.info(
            "reprobe_finished",
            target=target.id,
            recovered_exit_code=result.recovered_exit_code,
            state_lost=result.state_lost,
        )
        return result
