"""Scripted SSH fakes for exercising the engine without remote hosts.

A :class:`FakeHost` holds an ordered list of :class:`Rule` objects. Each
command run on a session is matched against the rules (first rule whose
``pattern`` is a substring of the command and that has uses left), and the
rule decides the output, exit status, delay, or disconnect.

Example:
    >>> host = FakeHost()
    >>> host.on("apt list --upgradable", stdout=APT_LISTING)
    >>> host.on("upgrade -y", disconnect=True)
    >>> connector = FakeConnector({1: host})
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .errors import CommandTimeoutError, ConnectionFailedError
from .interfaces import RemoteConnector, RemoteSession
from .remote import CommandResult, DetachedHandle

if TYPE_CHECKING:
    from .interfaces import OutputCallback
    from .models import Target


@dataclass
class Rule:
    """How a fake host answers commands containing ``pattern``."""

    pattern: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = 0
    disconnect: bool = False
    hang: bool = False
    delay: float = 0.0
    gate: asyncio.Event | None = None
    times: int | None = None
    chunks: list[str] | None = None

    def available(self) -> bool:
        return self.times is None or self.times > 0


@dataclass
class FakeHost:
    """Behaviour of one fake target.

    Attributes:
        rules: Ordered command rules
        unreachable: Every connection attempt fails
        fail_connects: Number of upcoming connection attempts that fail
        connect_delay: Seconds each connection takes
        resume_exit_code: Exit status recovered by ``resume``
        resume_lost: ``resume`` finds no bookkeeping files
        commands: Every command run, in order
        connect_attempts: Number of connection attempts
    """

    rules: list[Rule] = field(default_factory=list)
    unreachable: bool = False
    fail_connects: int = 0
    connect_delay: float = 0.0
    resume_exit_code: int | None = 0
    resume_lost: bool = False
    commands: list[str] = field(default_factory=list)
    connect_attempts: int = 0
    sudo_passwords: list[str | None] = field(default_factory=list)

    def on(self, pattern: str, **kwargs: object) -> Rule:
        """Add a rule and return it."""
        rule = Rule(pattern=pattern, **kwargs)  # type: ignore[arg-type]
        self.rules.append(rule)
        return rule

    def match(self, command: str) -> Rule | None:
        for rule in self.rules:
            if rule.pattern in command and rule.available():
                if rule.times is not None:
                    rule.times -= 1
                return rule
        return None

    def ran(self, pattern: str) -> int:
        """Count commands containing ``pattern``."""
        return sum(1 for command in self.commands if pattern in command)


class FakeSession(RemoteSession):
    """Session answering from a FakeHost's rules."""

    def __init__(self, host: FakeHost, connector: FakeConnector) -> None:
        self.host = host
        self._connector = connector
        self.closed = False

    async def _execute(
        self,
        command: str,
        timeout: float | None,
        sudo_password: str | None,
        on_output: OutputCallback | None,
    ) -> CommandResult:
        self.host.commands.append(command)
        self.host.sudo_passwords.append(sudo_password)
        rule = self.host.match(command)
        if rule is None:
            return CommandResult(command=command, exit_code=0)

        chunks = rule.chunks if rule.chunks is not None else ([rule.stdout] if rule.stdout else [])
        for chunk in chunks:
            if on_output is not None:
                on_output(chunk, "stdout")
            await asyncio.sleep(0)
        if rule.stderr and on_output is not None:
            on_output(rule.stderr, "stderr")

        if rule.gate is not None:
            await rule.gate.wait()
        if rule.delay:
            await asyncio.sleep(rule.delay)
        if rule.hang:
            raise CommandTimeoutError(command, timeout or 0.0, "".join(chunks))

        if rule.disconnect:
            return CommandResult(
                command=command, stdout="".join(chunks), stderr=rule.stderr, disconnected=True
            )
        return CommandResult(
            command=command,
            stdout="".join(chunks),
            stderr=rule.stderr,
            exit_code=rule.exit_code,
        )

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        return await self._execute(command, timeout, sudo_password, on_output)

    async def run_detached(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        result = await self._execute(command, timeout, sudo_password, on_output)
        result.handle = DetachedHandle(
            pid=4242,
            log_file="/tmp/update-fleet-fake.log",
            exit_file="/tmp/update-fleet-fake.exit",
            command=command,
        )
        return result

    async def resume(
        self,
        handle: DetachedHandle,
        *,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult | None:
        self.host.commands.append(f"resume {handle.pid}")
        if self.host.resume_lost:
            return None
        return CommandResult(
            command=handle.command, exit_code=self.host.resume_exit_code, handle=handle
        )

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._connector.active_sessions -= 1


class FakeConnector(RemoteConnector):
    """Connects to FakeHosts by target id and tracks open sessions."""

    def __init__(self, hosts: dict[int, FakeHost] | None = None) -> None:
        self.hosts = hosts or {}
        self.active_sessions = 0
        self.peak_sessions = 0
        self.sessions: list[FakeSession] = []

    def host(self, target_id: int) -> FakeHost:
        """Return the target's host, creating an empty one."""
        return self.hosts.setdefault(target_id, FakeHost())

    async def connect(self, target: Target) -> FakeSession:
        host = self.host(target.id)
        host.connect_attempts += 1
        if host.connect_delay:
            await asyncio.sleep(host.connect_delay)
        if host.unreachable:
            raise ConnectionFailedError(f"Failed to connect to {target.hostname}: unreachable")
        if host.fail_connects > 0:
            host.fail_connects -= 1
            raise ConnectionFailedError(f"Failed to connect to {target.hostname}: refused")

        session = FakeSession(host, self)
        self.sessions.append(session)
        self.active_sessions += 1
        self.peak_sessions = max(self.peak_sessions, self.active_sessions)
        return session
