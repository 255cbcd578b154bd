"""Core data models for the update engine.

This module defines Pydantic models for targets, cached updates, jobs,
and history entries.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path  # noqa: TC003 - needed at runtime by Pydantic

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


class OperationKind(str, Enum):
    """Kind of operation that can run against a target."""

    CHECK = "check"
    UPGRADE_ALL = "upgrade_all"
    FULL_UPGRADE_ALL = "full_upgrade_all"
    UPGRADE_PACKAGE = "upgrade_package"
    REBOOT = "reboot"

    @property
    def is_upgrade(self) -> bool:
        """Whether the operation changes installed packages."""
        return self in (
            OperationKind.UPGRADE_ALL,
            OperationKind.FULL_UPGRADE_ALL,
            OperationKind.UPGRADE_PACKAGE,
        )


class JobStatus(str, Enum):
    """Lifecycle status of an asynchronous job."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether the job has finished."""
        return self in (JobStatus.DONE, JobStatus.FAILED)


class HistoryStatus(str, Enum):
    """Status of a history entry."""

    STARTED = "started"
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"


class Reachability(str, Enum):
    """Reachability of a target as of its last check."""

    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    UNKNOWN = "unknown"


class ReprobeState(str, Enum):
    """Progress of the post-disconnect re-probe."""

    NONE = "none"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    UNREACHABLE = "unreachable"


class Target(BaseModel):
    """A managed remote host.

    Credentials are held by reference only: ``password_env`` and
    ``sudo_password_env`` name environment variables resolved at connect
    time, ``key_file`` names a private key on disk.
    """

    id: int = Field(..., description="Unique system identifier")
    name: str = Field(..., description="Display name")
    hostname: str = Field(..., description="Address to connect to")
    port: int = Field(default=22, description="SSH port")
    username: str = Field(..., description="SSH user")
    key_file: Path | None = Field(default=None, description="Private key path")
    password_env: str | None = Field(default=None, description="Env var holding the SSH password")
    sudo_password_env: str | None = Field(
        default=None, description="Env var holding the sudo password"
    )
    known_hosts: Path | None = Field(default=None, description="known_hosts file; None accepts any")
    disabled_managers: list[str] = Field(
        default_factory=list, description="Package manager families excluded by the user"
    )
    detected_managers: list[str] | None = Field(
        default=None, description="Families found on the host; None until detection runs"
    )

    @property
    def password(self) -> str | None:
        """Resolve the SSH password reference."""
        return os.environ.get(self.password_env) if self.password_env else None

    @property
    def sudo_password(self) -> str | None:
        """Resolve the sudo password reference."""
        return os.environ.get(self.sudo_password_env) if self.sudo_password_env else None

    @property
    def active_managers(self) -> list[str]:
        """Detected families minus the disabled ones."""
        detected = self.detected_managers or []
        return [name for name in detected if name not in self.disabled_managers]


class UpdateRecord(BaseModel):
    """A single pending package update."""

    model_config = ConfigDict(frozen=True)

    package_name: str
    current_version: str | None = None
    available_version: str
    manager: str
    architecture: str | None = None
    repository: str | None = None
    is_security: bool = False


class SystemInfo(BaseModel):
    """Host facts gathered alongside each check.

    Fields the host could not report are left empty.
    """

    os_name: str = ""
    os_version: str = ""
    kernel: str = ""
    hostname: str = ""
    uptime: str = ""
    arch: str = ""
    cpu_cores: str = ""
    memory: str = Field(default="", description="Total memory as reported by free -h")
    disk: str = Field(default="", description="Root filesystem usage, e.g. 12G/40G (30%)")
    needs_reboot: bool = False
    collected_at: datetime = Field(default_factory=utcnow)


class CacheEntry(BaseModel):
    """Last known update state of a target."""

    target_id: int
    updates: list[UpdateRecord] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)
    reachability: Reachability = Reachability.UNKNOWN
    system_info: SystemInfo | None = None

    @property
    def needs_reboot(self) -> bool:
        """Whether the host last reported that a reboot is required."""
        return self.system_info is not None and self.system_info.needs_reboot

    @property
    def managers(self) -> list[str]:
        """Distinct families that have pending updates, in first-seen order."""
        return list(dict.fromkeys(u.manager for u in self.updates))

    @property
    def security_count(self) -> int:
        """Number of pending security updates."""
        return sum(1 for u in self.updates if u.is_security)


class OperationResult(BaseModel):
    """Outcome of a finished operation, stored on the Job."""

    outcome: HistoryStatus
    message: str = ""
    output: str = ""
    update_count: int | None = None
    managers: list[str] = Field(default_factory=list)
    reprobe: ReprobeState = ReprobeState.NONE
    recovered_exit_code: int | None = None


class Job(BaseModel):
    """Asynchronous handle for an operation."""

    id: str
    target_id: int
    kind: OperationKind
    package_name: str | None = None
    status: JobStatus = JobStatus.PENDING
    result: OperationResult | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class HistoryEntry(BaseModel):
    """Audit record of an operation on a target."""

    id: int | None = None
    target_id: int
    action: OperationKind
    manager: str
    status: HistoryStatus = HistoryStatus.STARTED
    package_count: int | None = None
    packages: list[str] = Field(default_factory=list)
    command: str | None = None
    output: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class CacheView(BaseModel):
    """Cache entry plus staleness, as returned to callers."""

    target_id: int
    entry: CacheEntry | None
    is_stale: bool
    age_seconds: float | None
