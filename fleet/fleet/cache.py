"""Update cache with TTL-based staleness.

Holds the last known update list and check time per target. Staleness is
advisory: nothing here triggers a re-check.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from .models import CacheEntry, CacheView, Reachability, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .models import SystemInfo, UpdateRecord

logger = structlog.get_logger(__name__)

DEFAULT_TTL = timedelta(hours=12)


class UpdateCache:
    """Last known update state per target.

    Writes for a target happen only while that target's governor ticket is
    held, so the cache itself needs no locking.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the cache.

        Args:
            ttl: Age after which an entry is stale.
            clock: Source of the current time.
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[int, CacheEntry] = {}

    def get(self, target_id: int) -> CacheEntry | None:
        """Return the entry for a target, if it was ever checked."""
        return self._entries.get(target_id)

    def put(self, entry: CacheEntry) -> None:
        """Store an entry, replacing the previous one."""
        self._entries[entry.target_id] = entry
        logger.debug(
            "cache_updated",
            target=entry.target_id,
            updates=len(entry.updates),
            reachability=entry.reachability.value,
            needs_reboot=entry.needs_reboot,
        )

    def record(
        self,
        target_id: int,
        updates: list[UpdateRecord],
        reachability: Reachability = Reachability.REACHABLE,
        system_info: SystemInfo | None = None,
    ) -> CacheEntry:
        """Store the result of a check made just now.

        Without ``system_info`` the previous entry's host facts are kept.
        """
        if system_info is None:
            previous = self._entries.get(target_id)
            system_info = previous.system_info if previous is not None else None
        entry = CacheEntry(
            target_id=target_id,
            updates=list(updates),
            checked_at=self._clock(),
            reachability=reachability,
            system_info=system_info,
        )
        self.put(entry)
        return entry

    def mark_unreachable(self, target_id: int) -> CacheEntry:
        """Record that a target could not be reached just now."""
        return self.record(target_id, [], Reachability.UNREACHABLE)

    def set_reachability(self, target_id: int, reachability: Reachability) -> CacheEntry | None:
        """Change an existing entry's reachability, keeping its updates and check time."""
        entry = self._entries.get(target_id)
        if entry is None:
            return None
        entry = entry.model_copy(update={"reachability": reachability})
        self._entries[target_id] = entry
        logger.debug("cache_reachability_changed", target=target_id, reachability=reachability.value)
        return entry

    def invalidate(self, target_id: int | None = None) -> datetime:
        """Drop one entry, or all of them when ``target_id`` is None.

        Returns:
            The invalidation time. Re-checks that finish later produce
            entries with a newer ``checked_at``.
        """
        now = self._clock()
        if target_id is None:
            count = len(self._entries)
            self._entries.clear()
            logger.info("cache_invalidated", scope="all", entries=count)
        else:
            self._entries.pop(target_id, None)
            logger.info("cache_invalidated", scope="target", target=target_id)
        return now

    def age_of(self, target_id: int) -> timedelta | None:
        """Return the age of a target's entry, or None if never checked."""
        entry = self._entries.get(target_id)
        if entry is None:
            return None
        return self._clock() - entry.checked_at

    def is_stale(self, target_id: int) -> bool:
        """Whether the entry is older than the TTL. Never-checked targets are stale."""
        age = self.age_of(target_id)
        return age is None or age > self.ttl

    def stale_targets(self, target_ids: Iterable[int]) -> list[int]:
        """Return the given ids whose entries are stale."""
        return [target_id for target_id in target_ids if self.is_stale(target_id)]

    def view(self, target_id: int) -> CacheView:
        """Return the entry with its staleness and age."""
        age = self.age_of(target_id)
        return CacheView(
            target_id=target_id,
            entry=self._entries.get(target_id),
            is_stale=age is None or age > self.ttl,
            age_seconds=age.total_seconds() if age is not None else None,
        )

    def __len__(self) -> int:
        return len(self._entries)
