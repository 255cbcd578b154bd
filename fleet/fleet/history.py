"""Operation history stores.

History is an append-only audit log. An entry is inserted as ``started``
when its command begins and finalized exactly once; after that it is never
rewritten. Commands, output and errors are sanitized and clipped before
they are stored.
"""

from __future__ import annotations

import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import duckdb
import structlog

from .errors import HistoryError
from .interfaces import HistoryStore
from .models import HistoryEntry, HistoryStatus, OperationKind, utcnow
from .sanitize import ERROR_LIMIT, OUTPUT_LIMIT, clip, sanitize_command

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = structlog.get_logger(__name__)


def get_default_db_path() -> Path:
    """Get the default history database path following XDG conventions.

    - Uses $XDG_DATA_HOME if set
    - Falls back to ~/.local/share otherwise
    """
    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    base_dir = Path(xdg_data_home) if xdg_data_home else Path.home() / ".local" / "share"
    return base_dir / "update-fleet" / "history.duckdb"


def _prepare(entry: HistoryEntry) -> HistoryEntry:
    return entry.model_copy(
        update={
            "command": sanitize_command(entry.command) if entry.command else None,
            "output": clip(entry.output, OUTPUT_LIMIT),
            "error": clip(entry.error, ERROR_LIMIT),
        }
    )


def _finalized(
    entry: HistoryEntry,
    status: HistoryStatus,
    output: str | None,
    error: str | None,
    package_count: int | None,
    packages: list[str] | None,
) -> HistoryEntry:
    if entry.status != HistoryStatus.STARTED:
        raise HistoryError(f"History entry {entry.id} is already {entry.status.value}")
    if status == HistoryStatus.STARTED:
        raise HistoryError("Cannot finalize an entry as started")
    update: dict[str, Any] = {
        "status": status,
        "output": clip(output, OUTPUT_LIMIT),
        "error": clip(error, ERROR_LIMIT),
        "completed_at": utcnow(),
    }
    if package_count is not None:
        update["package_count"] = package_count
    if packages is not None:
        update["packages"] = list(packages)
    return entry.model_copy(update=update)


class MemoryHistoryStore(HistoryStore):
    """History kept in process memory."""

    def __init__(self) -> None:
        self._entries: dict[int, HistoryEntry] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def _insert(self, entry: HistoryEntry) -> int:
        with self._lock:
            entry_id = self._next_id
            self._next_id += 1
            self._entries[entry_id] = _prepare(entry).model_copy(update={"id": entry_id})
        return entry_id

    def start(self, entry: HistoryEntry) -> int:
        if entry.status != HistoryStatus.STARTED:
            raise HistoryError("New entries must be started")
        return self._insert(entry)

    def append(self, entry: HistoryEntry) -> int:
        return self._insert(entry)

    def finish(
        self,
        entry_id: int,
        status: HistoryStatus,
        *,
        output: str | None = None,
        error: str | None = None,
        package_count: int | None = None,
        packages: list[str] | None = None,
    ) -> HistoryEntry:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise HistoryError(f"History entry {entry_id} not found")
            entry = _finalized(entry, status, output, error, package_count, packages)
            self._entries[entry_id] = entry
        return entry.model_copy()

    def get(self, entry_id: int) -> HistoryEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
        return entry.model_copy() if entry else None

    def list(self, target_id: int, limit: int = 50) -> list[HistoryEntry]:
        with self._lock:
            entries = [e for e in self._entries.values() if e.target_id == target_id]
        entries.sort(key=lambda e: (e.started_at, e.id or 0), reverse=True)
        return [e.model_copy() for e in entries[:limit]]


# Increment when making schema changes
SCHEMA_VERSION = 1

_COLUMNS = (
    "id, target_id, action, manager, status, package_count, packages, "
    "command, output, error, started_at, completed_at"
)


def _to_db_time(value: datetime | None) -> datetime | None:
    # Stored as naive UTC
    if value is None:
        return None
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db_time(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC)


def initialize_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the history table if it doesn't exist.

    This function is idempotent - safe to call multiple times.
    """
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)
    conn.execute("CREATE SEQUENCE IF NOT EXISTS update_history_id_seq START 1")
    conn.execute("""
        CREATE TABLE IF NOT EXISTS update_history (
            id BIGINT PRIMARY KEY DEFAULT nextval('update_history_id_seq'),
            target_id INTEGER NOT NULL,
            action VARCHAR NOT NULL,
            manager VARCHAR NOT NULL,
            status VARCHAR NOT NULL,
            package_count INTEGER,
            packages VARCHAR[],
            command VARCHAR,
            output VARCHAR,
            error VARCHAR,
            started_at TIMESTAMP NOT NULL,
            completed_at TIMESTAMP
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_update_history_target ON update_history(target_id)"
    )
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    if row is None or row[0] is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", [SCHEMA_VERSION])


class DuckDBHistoryStore(HistoryStore):
    """History persisted in a DuckDB file.

    Example:
        >>> store = DuckDBHistoryStore(Path("/tmp/history.duckdb"))
        >>> store.list(1)
        []
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Database file, or ":memory:".
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(database=str(db_path))
        self._lock = threading.Lock()
        initialize_schema(self._conn)
        logger.debug("history_store_opened", path=str(db_path))

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _row_to_entry(self, row: Sequence[Any]) -> HistoryEntry:
        return HistoryEntry(
            id=row[0],
            target_id=row[1],
            action=OperationKind(row[2]),
            manager=row[3],
            status=HistoryStatus(row[4]),
            package_count=row[5],
            packages=list(row[6] or []),
            command=row[7],
            output=row[8],
            error=row[9],
            started_at=_from_db_time(row[10]),
            completed_at=_from_db_time(row[11]),
        )

    def _insert(self, entry: HistoryEntry) -> int:
        entry = _prepare(entry)
        with self._lock:
            row = self._conn.execute(
                """
                INSERT INTO update_history (
                    target_id, action, manager, status, package_count, packages,
                    command, output, error, started_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [
                    entry.target_id,
                    entry.action.value,
                    entry.manager,
                    entry.status.value,
                    entry.package_count,
                    list(entry.packages),
                    entry.command,
                    entry.output,
                    entry.error,
                    _to_db_time(entry.started_at),
                    _to_db_time(entry.completed_at),
                ],
            ).fetchone()
        if row is None:
            raise HistoryError("Insert returned no id")
        return int(row[0])

    def start(self, entry: HistoryEntry) -> int:
        if entry.status != HistoryStatus.STARTED:
            raise HistoryError("New entries must be started")
        return self._insert(entry)

    def append(self, entry: HistoryEntry) -> int:
        return self._insert(entry)

    def finish(
        self,
        entry_id: int,
        status: HistoryStatus,
        *,
        output: str | None = None,
        error: str | None = None,
        package_count: int | None = None,
        packages: list[str] | None = None,
    ) -> HistoryEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise HistoryError(f"History entry {entry_id} not found")
        entry = _finalized(entry, status, output, error, package_count, packages)
        with self._lock:
            self._conn.execute(
                """
                UPDATE update_history SET
                    status = ?, package_count = ?, packages = ?,
                    output = ?, error = ?, completed_at = ?
                WHERE id = ? AND status = 'started'
                """,
                [
                    entry.status.value,
                    entry.package_count,
                    list(entry.packages),
                    entry.output,
                    entry.error,
                    _to_db_time(entry.completed_at),
                    entry_id,
                ],
            )
        return entry

    def get(self, entry_id: int) -> HistoryEntry | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM update_history WHERE id = ?", [entry_id]
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def list(self, target_id: int, limit: int = 50) -> list[HistoryEntry]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM update_history
                WHERE target_id = ?
                ORDER BY started_at DESC, id DESC
                LIMIT ?
                """,
                [target_id, limit],
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]
