"""Update-Fleet Engine.

Update orchestration engine for a fleet of remote Linux hosts reached over
SSH: checks for pending package updates, runs upgrades and reboots, and
streams live output to observers.

This package contains the engine used by the other update-fleet subprojects
(pkgmgr, fleetctl).

Module Overview:
    cache: Last known update list per target with TTL-based staleness
    config: YAML-based configuration management (XDG spec compliant)
    errors: Error taxonomy and user-facing messages
    governor: Global session limit and per-target exclusivity
    history: Append-only operation history (memory or DuckDB)
    inference: Outcome inference and re-probe after a dropped connection
    interfaces: Abstract base classes for sessions, package managers, stores
    jobs: Asynchronous job records with bounded retention
    models: Pydantic data models for targets, updates, jobs and history
    orchestrator: Accepts operations and runs them as background jobs
    remote: SSH execution via asyncssh, attached and detached
    sanitize: Redaction of secrets from output and commands
    scheduler: Periodic checks of stale targets
    streaming: Live output events and the per-target broadcaster
    targets: In-memory target store
    testing: Scripted SSH fakes for tests
"""

from importlib.metadata import version as get_package_version

from fleet.cache import UpdateCache
from fleet.config import (
    ConfigManager,
    EngineConfig,
    FleetConfig,
    TargetConfig,
    get_config_dir,
    get_default_config_path,
)
from fleet.errors import (
    AmbiguousOutcomeError,
    CommandFailedError,
    CommandTimeoutError,
    ConfigError,
    ConnectionFailedError,
    ErrorKind,
    FleetError,
    HistoryError,
    InvalidPackageNameError,
    JobNotFoundError,
    OperationCancelledError,
    ParseError,
    TargetBusyError,
    TargetNotFoundError,
    UnsupportedOperationError,
    describe_error,
)
from fleet.governor import ConnectionGovernor, SessionTicket
from fleet.history import DuckDBHistoryStore, MemoryHistoryStore, get_default_db_path
from fleet.inference import RebootInference, ReprobeResult, classify
from fleet.interfaces import (
    HistoryStore,
    Listing,
    OutputCallback,
    PackageManager,
    RemoteConnector,
    RemoteSession,
    StartedCallback,
    TargetStore,
    UpdateAdapter,
)
from fleet.jobs import JobManager
from fleet.models import (
    CacheEntry,
    CacheView,
    HistoryEntry,
    HistoryStatus,
    Job,
    JobStatus,
    OperationKind,
    OperationResult,
    Reachability,
    ReprobeState,
    SystemInfo,
    Target,
    UpdateRecord,
)
from fleet.orchestrator import UpdateOrchestrator
from fleet.remote import CommandResult, DetachedHandle, SSHConnector, SSHRemoteSession
from fleet.scheduler import PeriodicChecker
from fleet.streaming import (
    DoneEvent,
    ErrorEvent,
    EventType,
    OutputBroadcaster,
    OutputEvent,
    PhaseEvent,
    ResetEvent,
    StartedEvent,
    StreamEvent,
    Subscription,
    WarningEvent,
    parse_event,
)
from fleet.targets import InMemoryTargetStore

__version__ = get_package_version("update-fleet")

__all__ = [
    "AmbiguousOutcomeError",
    "CacheEntry",
    "CacheView",
    "CommandFailedError",
    "CommandResult",
    "CommandTimeoutError",
    "ConfigError",
    "ConfigManager",
    "ConnectionFailedError",
    "ConnectionGovernor",
    "DetachedHandle",
    "DoneEvent",
    "DuckDBHistoryStore",
    "EngineConfig",
    "ErrorEvent",
    "ErrorKind",
    "EventType",
    "FleetConfig",
    "FleetError",
    "HistoryEntry",
    "HistoryError",
    "HistoryStatus",
    "HistoryStore",
    "InMemoryTargetStore",
    "InvalidPackageNameError",
    "Job",
    "JobManager",
    "JobNotFoundError",
    "JobStatus",
    "Listing",
    "MemoryHistoryStore",
    "OperationCancelledError",
    "OperationKind",
    "OperationResult",
    "OutputBroadcaster",
    "OutputCallback",
    "OutputEvent",
    "PackageManager",
    "ParseError",
    "PeriodicChecker",
    "PhaseEvent",
    "Reachability",
    "RebootInference",
    "RemoteConnector",
    "RemoteSession",
    "ReprobeResult",
    "ReprobeState",
    "ResetEvent",
    "SSHConnector",
    "SSHRemoteSession",
    "SessionTicket",
    "StartedCallback",
    "StartedEvent",
    "StreamEvent",
    "Subscription",
    "SystemInfo",
    "Target",
    "TargetBusyError",
    "TargetConfig",
    "TargetNotFoundError",
    "TargetStore",
    "UnsupportedOperationError",
    "UpdateAdapter",
    "UpdateCache",
    "UpdateOrchestrator",
    "UpdateRecord",
    "WarningEvent",
    "__version__",
    "classify",
    "describe_error",
    "get_config_dir",
    "get_default_config_path",
    "get_default_db_path",
    "parse_event",
]
