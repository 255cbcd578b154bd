"""Update orchestrator.

Turns an intent ("check system 7", "upgrade all on system 3") into a
background job that runs under the connection governor, streams its output
through the broadcaster, records history and refreshes the update cache.

Lifecycle of an operation:
    1. ``submit`` validates the request and reserves the target. A busy
       target raises TargetBusyError immediately.
    2. The job's task waits for a global session slot, marks the job
       running, resets the target's output channel and connects.
    3. Each remote command opens a ``started`` history entry, which is
       finalized exactly once.
    4. The job ends ``done`` or ``failed``. Upgrades whose connection dropped
       end ``done`` with a ``warning`` outcome and keep the target reserved
       while it is re-probed.

Cancelling a running upgrade closes the SSH channel but does not stop the
detached remote command.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from .cache import UpdateCache
from .config import EngineConfig
from .errors import (
    CommandTimeoutError,
    ConnectionFailedError,
    ErrorKind,
    FleetError,
    InvalidPackageNameError,
    TargetBusyError,
    UnsupportedOperationError,
    describe_error,
)
from .governor import ConnectionGovernor
from .history import MemoryHistoryStore
from .inference import RebootInference, classify
from .jobs import JobManager
from .models import (
    HistoryEntry,
    HistoryStatus,
    JobStatus,
    OperationKind,
    OperationResult,
    Reachability,
    ReprobeState,
)
from .sanitize import sanitize_command, sanitize_output
from .streaming import (
    DoneEvent,
    ErrorEvent,
    OutputBroadcaster,
    OutputEvent,
    PhaseEvent,
    StartedEvent,
    StreamEvent,
    Subscription,
    WarningEvent,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from .governor import SessionTicket
    from .interfaces import (
        HistoryStore,
        OutputCallback,
        RemoteConnector,
        RemoteSession,
        StartedCallback,
        TargetStore,
        UpdateAdapter,
    )
    from .models import CacheView, Job, SystemInfo, Target, UpdateRecord
    from .remote import CommandResult, DetachedHandle

logger = structlog.get_logger(__name__)

SYSTEM_MANAGER = "system"


@dataclass
class _OperationContext:
    """State of one running operation."""

    job_id: str
    target: Target
    kind: OperationKind
    ticket: SessionTicket
    package: str | None = None
    manager: str | None = None
    open_entry: int | None = None
    detached_started: bool = False


@dataclass
class _Collected:
    """Updates gathered across families during a check."""

    updates: list[UpdateRecord] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    output: str = ""


class UpdateOrchestrator:
    """Accepts operations on targets and runs them as background jobs.

    All public methods must be called from the event loop thread.
    """

    def __init__(
        self,
        targets: TargetStore,
        connector: RemoteConnector,
        adapter: UpdateAdapter,
        *,
        config: EngineConfig | None = None,
        governor: ConnectionGovernor | None = None,
        cache: UpdateCache | None = None,
        history: HistoryStore | None = None,
        broadcaster: OutputBroadcaster | None = None,
        jobs: JobManager | None = None,
        inference: RebootInference | None = None,
    ) -> None:
        """Wire the engine together.

        Args:
            targets: Source of targets.
            connector: Opens SSH sessions.
            adapter: Runs package manager families.
            config: Engine tunables. Defaults are used when omitted.
            governor: Shared connection governor.
            cache: Update cache.
            history: History store. In-memory when omitted.
            broadcaster: Live output broadcaster.
            jobs: Job manager.
            inference: Re-probe policy after ambiguous disconnects.
        """
        self.config = config or EngineConfig()
        self.targets = targets
        self.connector = connector
        self.adapter = adapter
        self.governor = governor or ConnectionGovernor(self.config.max_concurrent_sessions)
        self.cache = cache or UpdateCache(self.config.cache_ttl)
        self.history_store = history or MemoryHistoryStore()
        self.broadcaster = broadcaster or OutputBroadcaster(
            self.config.stream_buffer_size, self.config.subscriber_queue_size
        )
        self.jobs = jobs or JobManager(self.config.job_retention_seconds)
        self.inference = inference or RebootInference(
            connector, self.config.reprobe_interval, self.config.reprobe_timeout
        )
        self._contexts: dict[str, _OperationContext] = {}
        self._handlers: dict[OperationKind, Callable[[_OperationContext], Awaitable[None]]] = {
            OperationKind.CHECK: self._check,
            OperationKind.UPGRADE_ALL: self._upgrade,
            OperationKind.FULL_UPGRADE_ALL: self._upgrade,
            OperationKind.UPGRADE_PACKAGE: self._upgrade_package,
            OperationKind.REBOOT: self._reboot,
        }
        self._log = logger.bind(component="orchestrator")

    # Public API

    def submit(
        self,
        target_id: int,
        kind: OperationKind | str,
        package_name: str | None = None,
        *,
        manager: str | None = None,
    ) -> str:
        """Accept an operation and start it in the background.

        Args:
            target_id: Target to operate on.
            kind: Operation kind.
            package_name: Package to upgrade, for ``upgrade_package`` only.
            manager: Family of the package, when it is not in the cache.

        Returns:
            The job id.

        Raises:
            TargetNotFoundError: If the target is unknown.
            TargetBusyError: If an operation is already active on the target.
            InvalidPackageNameError: If the package name is missing or unsafe.
            UnsupportedOperationError: If a package name is given for
                another kind of operation.
        """
        kind = OperationKind(kind)
        target = self.targets.get(target_id)

        if kind == OperationKind.UPGRADE_PACKAGE:
            if not package_name:
                raise InvalidPackageNameError("A package name is required")
            package_name = self.adapter.validate_package_name(package_name)
        elif package_name is not None:
            raise UnsupportedOperationError(f"{kind.value} does not take a package name")

        ticket = self.governor.reserve(target.id, kind.value)
        try:
            loop = asyncio.get_running_loop()
            job = self.jobs.create(target.id, kind, package_name)
        except BaseException:
            self.governor.release(ticket)
            raise

        context = _OperationContext(
            job_id=job.id,
            target=target,
            kind=kind,
            ticket=ticket,
            package=package_name,
            manager=manager,
        )
        self._contexts[job.id] = context
        task = loop.create_task(self._run(context), name=f"{kind.value}-{target.id}")
        self.jobs.attach(job.id, task)

        self._log.info(
            "operation_submitted",
            job_id=job.id,
            target=target.id,
            kind=kind.value,
            package=package_name,
        )
        return job.id

    def poll(self, job_id: str) -> Job:
        """Return a job's current state.

        Raises:
            JobNotFoundError: If the job is unknown or was discarded.
        """
        return self.jobs.get(job_id)

    async def wait(self, job_id: str, interval: float = 0.5, timeout: float | None = None) -> Job:
        """Poll a job until it reaches a terminal state.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
            JobNotFoundError: If the job is unknown or was discarded.
        """
        async with asyncio.timeout(timeout):
            while True:
                job = self.poll(job_id)
                if job.status.is_terminal:
                    return job
                await asyncio.sleep(interval)

    async def join(self, job_id: str) -> Job:
        """Wait for a job's background task to end, including any re-probe."""
        task = self.jobs.task(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.poll(job_id)

    def cancel(self, job_id: str) -> Job:
        """Cancel a job.

        A pending job fails with ``cancelled`` immediately. A running job's
        task is cancelled, which closes its SSH channel; a detached upgrade
        keeps running on the remote host.

        Raises:
            JobNotFoundError: If the job is unknown or was discarded.
        """
        job = self.poll(job_id)
        if job.status.is_terminal:
            return job

        task = self.jobs.task(job_id)
        context = self._contexts.get(job_id)
        if task is not None:
            task.cancel()

        if job.status == JobStatus.PENDING:
            if context is not None:
                self.governor.release(context.ticket)
                self._contexts.pop(job_id, None)
            self._log.info("operation_cancelled", job_id=job_id, stage="pending")
            return self.jobs.fail(
                job_id, ErrorKind.CANCELLED, describe_error(ErrorKind.CANCELLED)
            )

        self._log.info("operation_cancelled", job_id=job_id, stage="running")
        return self.poll(job_id)

    def add_listener(self, listener: Callable[[Job], None]) -> None:
        """Register a callback receiving every job that reaches a terminal state."""
        self.jobs.add_listener(listener)

    def subscribe(self, target_id: int) -> Subscription:
        """Subscribe to a target's live output, replaying the current operation."""
        self.targets.get(target_id)
        return self.broadcaster.subscribe(target_id)

    def check_all(self) -> dict[int, str | FleetError]:
        """Submit a check for every target.

        Returns:
            Job id per target, or the error that prevented submission.
        """
        submitted: dict[int, str | FleetError] = {}
        for target in self.targets.list():
            try:
                submitted[target.id] = self.submit(target.id, OperationKind.CHECK)
            except TargetBusyError as e:
                submitted[target.id] = e
        return submitted

    def invalidate_all(self) -> datetime:
        """Clear the whole cache without waiting for re-checks.

        Returns:
            The invalidation time.
        """
        return self.cache.invalidate(None)

    def recheck_all(self) -> tuple[datetime, dict[int, str | FleetError]]:
        """Invalidate the cache, then submit a check for every target."""
        invalidated_at = self.invalidate_all()
        return invalidated_at, self.check_all()

    def cache_view(self, target_id: int) -> CacheView:
        """Return a target's cache entry with its staleness."""
        self.targets.get(target_id)
        return self.cache.view(target_id)

    def history(self, target_id: int, limit: int = 50) -> list[HistoryEntry]:
        """Return a target's history, newest first."""
        self.targets.get(target_id)
        return self.history_store.list(target_id, limit)

    def supports_full_upgrade(self, target_id: int) -> bool:
        """Whether any active family on the target has a full-upgrade command."""
        target = self.targets.get(target_id)
        return any(
            self.adapter.supports_full_upgrade(m) for m in self.adapter.active_managers(target)
        )

    def active_operation(self, target_id: int) -> str | None:
        """Return the operation currently holding the target, if any."""
        return self.governor.active_operation(target_id)

    async def shutdown(self) -> None:
        """Cancel every running job and wait for the tasks to end."""
        tasks = [task for job in self.jobs.list() if (task := self.jobs.task(job.id))]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # Tasks cancelled before their first step never reach their cleanup
        for job_id, context in list(self._contexts.items()):
            self.governor.release(context.ticket)
            self.jobs.fail(job_id, ErrorKind.CANCELLED, describe_error(ErrorKind.CANCELLED))
            self._contexts.pop(job_id, None)

    # Task wrapper

    async def _run(self, ctx: _OperationContext) -> None:
        log = self._log.bind(job_id=ctx.job_id, target=ctx.target.id, kind=ctx.kind.value)
        running = False
        try:
            await self.governor.acquire_slot(ctx.ticket)
            self.jobs.mark_running(ctx.job_id)
            self.broadcaster.reset(ctx.target.id)
            running = True
            log.info("operation_started")
            await self._handlers[ctx.kind](ctx)
        except asyncio.CancelledError:
            if not running:
                # Nothing was published for this job yet
                self.jobs.fail(ctx.job_id, ErrorKind.CANCELLED, describe_error(ErrorKind.CANCELLED))
                raise
            message = describe_error(ErrorKind.CANCELLED)
            if ctx.detached_started:
                message += " The remote upgrade command may still be running."
            self._abandon_entry(ctx, message)
            self._fail(ctx, ErrorKind.CANCELLED, message)
            log.info("operation_cancelled", detached=ctx.detached_started)
            raise
        except ConnectionFailedError as e:
            self._abandon_entry(ctx, str(e))
            self.cache.mark_unreachable(ctx.target.id)
            self._fail(ctx, e.kind, str(e))
            log.warning("operation_unreachable", error=str(e))
        except CommandTimeoutError as e:
            message = f"{e}. The remote process may still be running."
            self._abandon_entry(ctx, message, e.output)
            self._fail(ctx, e.kind, message)
            log.warning("operation_timeout", timeout=e.timeout)
        except FleetError as e:
            self._abandon_entry(ctx, str(e))
            self._fail(ctx, e.kind, str(e))
            log.warning("operation_failed", error=str(e), error_kind=e.kind.value)
        except Exception as e:
            log.exception("operation_crashed", error=str(e))
            self._abandon_entry(ctx, str(e))
            self._fail(ctx, ErrorKind.INTERNAL, f"{describe_error(ErrorKind.INTERNAL)} {e}")
        finally:
            self.governor.release(ctx.ticket)
            self.broadcaster.finish(ctx.target.id)
            self._contexts.pop(ctx.job_id, None)

    # Operations

    async def _check(self, ctx: _OperationContext) -> None:
        async with await self._connect(ctx) as session:
            system_info = await self._system_info(session, ctx.target)
            target, managers = await self._resolve_managers(session, ctx.target)
            ctx.target = target
            if not managers:
                self.cache.record(target.id, [], system_info=system_info)
                self._finish(
                    ctx,
                    OperationResult(
                        outcome=HistoryStatus.SUCCESS,
                        message="No package managers detected",
                        update_count=0,
                    ),
                )
                return

            command = " && ".join(self.adapter.check_command(m) for m in managers)
            self._start_entry(ctx, ",".join(managers), command)
            collected = await self._collect_updates(session, target, managers, ctx=ctx)

        entry = self.cache.record(target.id, collected.updates, system_info=system_info)
        succeeded = [m for m in managers if m not in collected.failed]
        if not collected.failed:
            status = HistoryStatus.SUCCESS
        elif succeeded:
            status = HistoryStatus.WARNING
        else:
            status = HistoryStatus.FAILED

        error = f"Check failed for: {', '.join(collected.failed)}" if collected.failed else None
        self._finish_entry(
            ctx,
            status,
            output=collected.output,
            error=error,
            package_count=len(entry.updates),
            packages=[u.package_name for u in entry.updates],
        )

        if status == HistoryStatus.FAILED:
            self._fail(ctx, ErrorKind.COMMAND_FAILED, error or "Check failed")
            return

        self._finish(
            ctx,
            OperationResult(
                outcome=status,
                message=error or f"{len(entry.updates)} updates available",
                output=collected.output,
                update_count=len(entry.updates),
                managers=entry.managers or succeeded,
            ),
        )

    async def _upgrade(self, ctx: _OperationContext) -> None:
        full = ctx.kind == OperationKind.FULL_UPGRADE_ALL
        before = self.cache.get(ctx.target.id)
        results: list[tuple[str, HistoryStatus, CommandResult]] = []
        ambiguous: CommandResult | None = None
        update_count: int | None = None

        async with await self._connect(ctx) as session:
            target, active = await self._resolve_managers(session, ctx.target)
            ctx.target = target
            cached = [m for m in before.managers if m in active] if before else []
            managers = cached or active
            if full:
                managers = [m for m in managers if self.adapter.supports_full_upgrade(m)]
            if not managers:
                raise UnsupportedOperationError(
                    "No package manager supports a full upgrade on this system"
                    if full
                    else "No package managers detected on this system"
                )

            for manager in managers:
                pending = (
                    [u.package_name for u in before.updates if u.manager == manager]
                    if before
                    else None
                )
                result = await self.adapter.upgrade_all(
                    session,
                    manager,
                    full=full,
                    timeout=self.config.upgrade_timeout,
                    sudo_password=target.sudo_password,
                    on_output=self._output_callback(ctx),
                    on_started=self._started_callback(ctx, manager, pending),
                )
                status = self._record_result(ctx, result)
                results.append((manager, status, result))
                if status == HistoryStatus.WARNING:
                    ambiguous = result
                    break

            if ambiguous is None:
                update_count = await self._silent_recheck(session, target)

        pre_count = len(before.updates) if before else None
        await self._conclude_upgrade(ctx, results, ambiguous, pre_count, update_count)

    async def _upgrade_package(self, ctx: _OperationContext) -> None:
        package = ctx.package or ""
        before = self.cache.get(ctx.target.id)
        ambiguous: CommandResult | None = None
        update_count: int | None = None

        async with await self._connect(ctx) as session:
            target, active = await self._resolve_managers(session, ctx.target)
            ctx.target = target
            manager = self._package_manager(ctx, active)
            result = await self.adapter.upgrade_package(
                session,
                manager,
                package,
                timeout=self.config.package_upgrade_timeout,
                sudo_password=target.sudo_password,
                on_output=self._output_callback(ctx),
                on_started=self._started_callback(ctx, manager, [package]),
            )
            status = self._record_result(ctx, result)
            if status == HistoryStatus.WARNING:
                ambiguous = result
            else:
                update_count = await self._silent_recheck(session, target)

        pre_count = len(before.updates) if before else None
        await self._conclude_upgrade(
            ctx, [(manager, status, result)], ambiguous, pre_count, update_count
        )

    async def _reboot(self, ctx: _OperationContext) -> None:
        async with await self._connect(ctx) as session:
            command = self.adapter.reboot_command()
            self._start_entry(ctx, SYSTEM_MANAGER, command)
            self._publish(ctx, StartedEvent(command=sanitize_command(command), manager=SYSTEM_MANAGER))
            try:
                result = await session.run(
                    command,
                    timeout=self.config.reboot_timeout,
                    sudo_password=ctx.target.sudo_password,
                    on_output=self._output_callback(ctx),
                )
            except CommandTimeoutError as e:
                self._log.debug("reboot_command_timeout", target=ctx.target.id, timeout=e.timeout)
                result = None

        # A dropped connection is what a reboot looks like
        if result is None or result.exit_code is None or result.exit_code == 0:
            self._finish_entry(
                ctx, HistoryStatus.SUCCESS, output=result.output if result else None
            )
            if self.cache.set_reachability(ctx.target.id, Reachability.UNREACHABLE) is None:
                self.cache.mark_unreachable(ctx.target.id)
            self._finish(
                ctx,
                OperationResult(
                    outcome=HistoryStatus.SUCCESS,
                    message="Reboot initiated",
                    output=result.output if result else "",
                ),
            )
            return

        error = result.stderr or f"Reboot command exited with status {result.exit_code}"
        self._finish_entry(ctx, HistoryStatus.FAILED, output=result.stdout, error=error)
        self._fail(
            ctx,
            ErrorKind.COMMAND_FAILED,
            error,
            OperationResult(outcome=HistoryStatus.FAILED, message=error, output=result.output),
        )

    # Upgrade outcome and re-probe

    async def _conclude_upgrade(
        self,
        ctx: _OperationContext,
        results: list[tuple[str, HistoryStatus, CommandResult]],
        ambiguous: CommandResult | None,
        pre_count: int | None,
        update_count: int | None,
    ) -> None:
        managers = [manager for manager, _, _ in results]
        output = "\n".join(r.output for _, _, r in results if r.output)

        if ambiguous is not None:
            message = describe_error(ErrorKind.AMBIGUOUS)
            self._finish(
                ctx,
                OperationResult(
                    outcome=HistoryStatus.WARNING,
                    message=message,
                    output=output,
                    managers=managers,
                    reprobe=ReprobeState.PENDING,
                ),
                publish_done=False,
            )
            self._publish(ctx, WarningEvent(message="Connection lost; the system may be rebooting"))
            await self._reprobe(ctx, ambiguous.handle, pre_count)
            return

        failed = [manager for manager, status, _ in results if status == HistoryStatus.FAILED]
        if failed:
            last = next(r for m, s, r in results if m == failed[-1] and s == HistoryStatus.FAILED)
            message = f"Upgrade failed for {', '.join(failed)} (exit status {last.exit_code})"
            self._fail(
                ctx,
                ErrorKind.COMMAND_FAILED,
                message,
                OperationResult(
                    outcome=HistoryStatus.FAILED,
                    message=message,
                    output=output,
                    update_count=update_count,
                    managers=managers,
                ),
            )
            return

        what = ctx.package if ctx.kind == OperationKind.UPGRADE_PACKAGE else ", ".join(managers)
        self._finish(
            ctx,
            OperationResult(
                outcome=HistoryStatus.SUCCESS,
                message=f"Upgraded {what}",
                output=output,
                update_count=update_count,
                managers=managers,
            ),
        )

    async def _reprobe(
        self,
        ctx: _OperationContext,
        handle: DetachedHandle | None,
        pre_count: int | None,
    ) -> None:
        """Reconnect after an ambiguous disconnect; the target stays reserved."""
        target_id = ctx.target.id
        self._publish(ctx, PhaseEvent(phase="Reconnecting..."))
        probe = await self.inference.reprobe(
            ctx.target, handle, resume_timeout=self.config.command_timeout
        )

        if probe.session is None:
            self.cache.mark_unreachable(target_id)
            message = (
                f"System did not come back within {self.inference.timeout:g}s; "
                "the outcome remains a warning"
            )
            self.jobs.update_result(ctx.job_id, reprobe=ReprobeState.UNREACHABLE)
            self._publish(ctx, WarningEvent(message=message))
            self._publish(ctx, DoneEvent(success=True))
            self._log.warning("reprobe_unreachable", target=target_id, attempts=probe.attempts)
            return

        async with probe.session as session:
            self._publish(ctx, PhaseEvent(phase="Checking upgrade result..."))
            update_count = await self._recheck_with_retries(session, ctx.target)

        if update_count is None:
            summary = "Reconnected, but the post-reboot check did not complete."
        elif pre_count is None:
            summary = f"Reconnected. Post-reboot check: {update_count} updates pending."
        else:
            verdict = (
                "Upgrade appears successful." if update_count < pre_count
                else "Upgrade may not have completed."
            )
            summary = (
                f"Reconnected. Post-reboot check: {pre_count} updates before, "
                f"{update_count} after. {verdict}"
            )

        self.jobs.update_result(
            ctx.job_id,
            reprobe=ReprobeState.CONFIRMED,
            recovered_exit_code=probe.recovered_exit_code,
            update_count=update_count,
            message=f"{describe_error(ErrorKind.AMBIGUOUS)} {summary}",
        )
        self._publish(ctx, PhaseEvent(phase=summary))
        self._publish(ctx, DoneEvent(success=True))
        self._log.info(
            "reprobe_confirmed",
            target=target_id,
            attempts=probe.attempts,
            recovered_exit_code=probe.recovered_exit_code,
            update_count=update_count,
        )

    # Helpers

    async def _connect(self, ctx: _OperationContext) -> RemoteSession:
        self._publish(ctx, PhaseEvent(phase="Connecting..."))
        return await self.connector.connect(ctx.target)

    async def _resolve_managers(
        self, session: RemoteSession, target: Target
    ) -> tuple[Target, list[str]]:
        """Detect families on first contact, then return the active ones."""
        if target.detected_managers is None:
            detected = await self.adapter.detect(session, target)
            target = self.targets.update_detected(target.id, detected)
        return target, self.adapter.active_managers(target)

    def _package_manager(self, ctx: _OperationContext, active: list[str]) -> str:
        if ctx.manager is not None:
            if ctx.manager not in active:
                raise UnsupportedOperationError(
                    f"Package manager {ctx.manager} is not active on this system"
                )
            return ctx.manager

        entry = self.cache.get(ctx.target.id)
        if entry is not None:
            for update in entry.updates:
                if update.package_name == ctx.package and update.manager in active:
                    return update.manager

        if len(active) == 1:
            return active[0]
        raise UnsupportedOperationError(
            f"Package {ctx.package} is not in the cached updates; specify its package manager"
        )

    async def _collect_updates(
        self,
        session: RemoteSession,
        target: Target,
        managers: list[str],
        *,
        ctx: _OperationContext | None = None,
    ) -> _Collected:
        """List updates for each family.

        Without a context nothing is broadcast (silent re-checks).

        Raises:
            ConnectionFailedError: If the connection drops mid-check.
        """
        collected = _Collected()
        outputs: list[str] = []
        for manager in managers:
            listing = await self.adapter.list_updates(
                session,
                manager,
                timeout=self.config.command_timeout,
                sudo_password=target.sudo_password,
                on_output=self._output_callback(ctx) if ctx else None,
                on_started=self._started_callback(ctx, manager) if ctx else None,
            )
            if listing.result is not None:
                if listing.result.disconnected:
                    raise ConnectionFailedError(f"Connection to {target.hostname} lost during check")
                outputs.append(listing.result.stdout)

            if listing.ok:
                collected.updates.extend(listing.updates)
                continue

            collected.failed.append(manager)
            exit_code = listing.result.exit_code if listing.result else None
            self._log.warning("check_failed", target=target.id, manager=manager, exit_code=exit_code)
            if ctx is not None:
                self._publish(ctx, WarningEvent(message=f"{manager}: check failed (exit status {exit_code})"))

        collected.output = "".join(outputs)
        return collected

    async def _system_info(self, session: RemoteSession, target: Target) -> SystemInfo | None:
        """Gather host facts. A failure is logged and never fails the operation."""
        info = await self.adapter.system_info(session, timeout=self.config.command_timeout)
        if info is not None and info.needs_reboot:
            self._log.info("reboot_required", target=target.id, kernel=info.kernel)
        return info

    async def _silent_recheck(self, session: RemoteSession, target: Target) -> int | None:
        """Refresh the cache after an upgrade without history or broadcast."""
        managers = self.adapter.active_managers(self.targets.get(target.id))
        system_info = await self._system_info(session, target)
        try:
            collected = await self._collect_updates(session, target, managers)
        except FleetError as e:
            self._log.warning("recheck_failed", target=target.id, error=str(e))
            self.cache.invalidate(target.id)
            return None
        if collected.failed:
            self.cache.invalidate(target.id)
            return None
        return len(
            self.cache.record(target.id, collected.updates, system_info=system_info).updates
        )

    async def _recheck_with_retries(self, session: RemoteSession, target: Target) -> int | None:
        attempts = self.config.recheck_retries
        system_info = await self._system_info(session, target)
        for attempt in range(1, attempts + 1):
            managers = self.adapter.active_managers(self.targets.get(target.id))
            try:
                collected = await self._collect_updates(session, target, managers)
            except FleetError as e:
                self._log.warning("recheck_attempt_failed", target=target.id, attempt=attempt, error=str(e))
            else:
                if not collected.failed:
                    entry = self.cache.record(target.id, collected.updates, system_info=system_info)
                    return len(entry.updates)
                self._log.warning(
                    "recheck_attempt_failed", target=target.id, attempt=attempt, failed=collected.failed
                )
            if attempt < attempts:
                await asyncio.sleep(self.config.recheck_retry_delay)

        self.cache.set_reachability(target.id, Reachability.REACHABLE)
        return None

    def _record_result(self, ctx: _OperationContext, result: CommandResult) -> HistoryStatus:
        status = classify(result)
        if status == HistoryStatus.WARNING:
            error = "Connection lost before the command finished; likely complete, inferred after reboot"
        elif status == HistoryStatus.FAILED:
            error = result.stderr or f"Command exited with status {result.exit_code}"
        else:
            error = None
        self._finish_entry(ctx, status, output=result.output, error=error)
        return status

    def _output_callback(self, ctx: _OperationContext) -> OutputCallback:
        def emit(text: str, stream: str) -> None:
            self._publish(ctx, OutputEvent(data=sanitize_output(text), stream=stream))

        return emit

    def _started_callback(
        self,
        ctx: _OperationContext,
        manager: str,
        packages: list[str] | None = None,
    ) -> StartedCallback:
        def started(command: str, label: str | None) -> None:
            if ctx.open_entry is None:
                self._start_entry(ctx, manager, command, packages)
            if ctx.kind.is_upgrade:
                ctx.detached_started = True
            self._publish(ctx, StartedEvent(command=sanitize_command(command), manager=manager))
            if label:
                self._publish(ctx, PhaseEvent(phase=label))

        return started

    def _start_entry(
        self,
        ctx: _OperationContext,
        manager: str,
        command: str,
        packages: list[str] | None = None,
    ) -> None:
        ctx.open_entry = self.history_store.start(
            HistoryEntry(
                target_id=ctx.target.id,
                action=ctx.kind,
                manager=manager,
                command=command,
                packages=packages or [],
                package_count=len(packages) if packages is not None else None,
            )
        )

    def _finish_entry(
        self,
        ctx: _OperationContext,
        status: HistoryStatus,
        *,
        output: str | None = None,
        error: str | None = None,
        package_count: int | None = None,
        packages: list[str] | None = None,
    ) -> None:
        if ctx.open_entry is None:
            return
        entry_id, ctx.open_entry = ctx.open_entry, None
        self.history_store.finish(
            entry_id,
            status,
            output=output,
            error=error,
            package_count=package_count,
            packages=packages,
        )

    def _abandon_entry(self, ctx: _OperationContext, error: str, output: str | None = None) -> None:
        self._finish_entry(ctx, HistoryStatus.FAILED, output=output, error=error)

    def _publish(self, ctx: _OperationContext, event: StreamEvent) -> None:
        self.broadcaster.publish(ctx.target.id, event)

    def _finish(
        self,
        ctx: _OperationContext,
        result: OperationResult,
        *,
        publish_done: bool = True,
    ) -> None:
        self.jobs.finish(ctx.job_id, result)
        if publish_done:
            self._publish(ctx, DoneEvent(success=result.outcome != HistoryStatus.FAILED))

    def _fail(
        self,
        ctx: _OperationContext,
        kind: ErrorKind,
        message: str,
        result: OperationResult | None = None,
    ) -> None:
        self.jobs.fail(ctx.job_id, kind, message, result)
        self._publish(ctx, ErrorEvent(message=message))
        self._publish(ctx, DoneEvent(success=False))

