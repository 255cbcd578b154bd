"""Connection governor for remote session coordination.

This module bounds the number of concurrent SSH sessions process-wide and
serializes operations per target.

- Per-target locks reject instead of queueing: a second intent on a busy
  target raises TargetBusyError immediately.
- Global slots queue: a caller waits on an asyncio.Semaphore until a
  session slot is free.
- The per-target lock is always taken before the global slot.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from .errors import TargetBusyError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)


@dataclass
class _TargetLock:
    """Entry in the per-target lock table."""

    holder: str | None = None
    refs: int = 0
    acquired_at: float = field(default_factory=time.monotonic)


@dataclass(eq=False)
class SessionTicket:
    """Proof that a caller holds a target's lock and possibly a global slot."""

    target_id: int
    operation: str
    reserved_at: float = field(default_factory=time.monotonic)
    has_slot: bool = False
    released: bool = False

    @property
    def hold_duration(self) -> float:
        """Return how long the ticket has been held in seconds."""
        return time.monotonic() - self.reserved_at


class ConnectionGovernor:
    """Grants SSH session slots and per-target exclusivity.

    One instance is shared by the whole process. The lock table is guarded
    by a threading.Lock so that entries can be created and reclaimed from
    any thread without losing mutual exclusion; the global semaphore is an
    asyncio primitive and must be awaited on the engine's event loop.
    """

    def __init__(self, max_sessions: int = 5) -> None:
        """Initialize the governor.

        Args:
            max_sessions: Maximum number of concurrent remote sessions.
        """
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self.max_sessions = max_sessions
        self._slots = asyncio.Semaphore(max_sessions)
        self._table: dict[int, _TargetLock] = {}
        self._table_lock = threading.Lock()
        self._active_sessions = 0
        self._peak_sessions = 0
        self._log = logger.bind(component="connection_governor")

    @property
    def active_sessions(self) -> int:
        """Number of global slots currently held."""
        return self._active_sessions

    @property
    def peak_sessions(self) -> int:
        """Highest number of slots held at the same time."""
        return self._peak_sessions

    @property
    def tracked_targets(self) -> int:
        """Number of entries in the per-target lock table."""
        with self._table_lock:
            return len(self._table)

    def is_busy(self, target_id: int) -> bool:
        """Check whether a target has an active operation."""
        return self.active_operation(target_id) is not None

    def active_operation(self, target_id: int) -> str | None:
        """Return the operation holding a target's lock, if any."""
        with self._table_lock:
            entry = self._table.get(target_id)
            return entry.holder if entry else None

    def reserve(self, target_id: int, operation: str) -> SessionTicket:
        """Take a target's lock without waiting.

        Args:
            target_id: The target to lock.
            operation: Name of the operation, reported to rejected callers.

        Returns:
            A ticket that must be passed to release().

        Raises:
            TargetBusyError: If the target's lock is already held.
        """
        with self._table_lock:
            entry = self._table.get(target_id)
            if entry is None:
                entry = _TargetLock()
                self._table[target_id] = entry
            if entry.holder is not None:
                self._log.info(
                    "target_busy",
                    target=target_id,
                    requested=operation,
                    active=entry.holder,
                )
                raise TargetBusyError(target_id, entry.holder)
            entry.holder = operation
            entry.refs += 1
            entry.acquired_at = time.monotonic()

        self._log.debug("target_reserved", target=target_id, operation=operation)
        return SessionTicket(target_id=target_id, operation=operation)

    async def acquire_slot(self, ticket: SessionTicket) -> None:
        """Wait for a global session slot for a reserved ticket.

        If the wait is cancelled, the ticket's target lock is released too.
        """
        if ticket.released:
            raise RuntimeError("Ticket already released")
        if ticket.has_slot:
            return

        log = self._log.bind(target=ticket.target_id, operation=ticket.operation)
        log.debug("waiting_for_session_slot", active_sessions=self._active_sessions)
        try:
            await self._slots.acquire()
        except asyncio.CancelledError:
            self.release(ticket)
            raise

        ticket.has_slot = True
        self._active_sessions += 1
        self._peak_sessions = max(self._peak_sessions, self._active_sessions)
        log.debug("session_slot_acquired", active_sessions=self._active_sessions)

    async def acquire(self, target_id: int, operation: str) -> SessionTicket:
        """Reserve the target, then wait for a global slot.

        Raises:
            TargetBusyError: If the target is busy.
        """
        ticket = self.reserve(target_id, operation)
        await self.acquire_slot(ticket)
        return ticket

    def release(self, ticket: SessionTicket) -> None:
        """Release a ticket's global slot and target lock.

        Safe to call more than once.
        """
        if ticket.released:
            return
        ticket.released = True

        if ticket.has_slot:
            ticket.has_slot = False
            self._active_sessions = max(0, self._active_sessions - 1)
            self._slots.release()

        with self._table_lock:
            entry = self._table.get(ticket.target_id)
            if entry is not None:
                entry.holder = None
                entry.refs -= 1
                if entry.refs <= 0:
                    del self._table[ticket.target_id]

        self._log.debug(
            "target_released",
            target=ticket.target_id,
            operation=ticket.operation,
            hold_duration=round(ticket.hold_duration, 3),
            active_sessions=self._active_sessions,
        )

    @contextlib.asynccontextmanager
    async def session(self, target_id: int, operation: str) -> AsyncIterator[SessionTicket]:
        """Hold a target lock and a global slot for the duration of the block."""
        ticket = await self.acquire(target_id, operation)
        try:
            yield ticket
        finally:
            self.release(ticket)
