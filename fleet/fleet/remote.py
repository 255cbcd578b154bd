"""Remote command execution via SSH.

This module provides the asyncssh-backed session used by the engine. Two
execution styles are supported:

- Attached: ``run`` streams stdout/stderr while the command runs and ends
  with its exit code.
- Detached: ``run_detached`` starts the command under ``nohup setsid`` with
  its output in a remote log file and its exit code in a remote exit file,
  then follows the log. If the connection drops (for example because the
  upgrade rebooted the host), the command keeps running and the returned
  handle lets a later session ``resume`` it.

Sources consulted:
- AsyncSSH ReadTheDocs: https://asyncssh.readthedocs.io/en/latest/
"""

from __future__ import annotations

import asyncio
import shlex
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import asyncssh
import structlog

from .errors import CommandTimeoutError, ConnectionFailedError
from .interfaces import RemoteConnector, RemoteSession

if TYPE_CHECKING:
    from .interfaces import OutputCallback
    from .models import Target

logger = structlog.get_logger(__name__)

# Non-interactive SSH sessions often lack the sbin directories
PATH_PREFIX = "export PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin:$PATH; "

# Remote directory for detached command bookkeeping
DETACHED_DIR = "/tmp"

# Timeout for short bookkeeping commands (launch, reading the exit file)
BOOKKEEPING_TIMEOUT = 30.0

_READ_SIZE = 4096


@dataclass
class DetachedHandle:
    """Remote bookkeeping of a detached command."""

    pid: int
    log_file: str
    exit_file: str
    command: str


@dataclass
class CommandResult:
    """Result of a remote command.

    Attributes:
        command: The command that ran
        stdout: Captured standard output
        stderr: Captured standard error
        exit_code: Exit status, or None if it was never received
        disconnected: The transport dropped before the exit status arrived
        handle: Detached bookkeeping, for commands started with run_detached
    """

    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    disconnected: bool = False
    handle: DetachedHandle | None = None

    @property
    def success(self) -> bool:
        """Whether the command exited with status 0."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def _parse_exit_code(text: str) -> int | None:
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        return None


class SSHRemoteSession(RemoteSession):
    """An open asyncssh connection to one target."""

    def __init__(
        self,
        connection: asyncssh.SSHClientConnection,
        host: str,
        command_timeout: float = 120.0,
    ) -> None:
        """Wrap a connection.

        Args:
            connection: Established asyncssh connection.
            host: Hostname, for logging.
            command_timeout: Timeout used when a call passes none.
        """
        self._connection = connection
        self.host = host
        self.command_timeout = command_timeout
        self._log = logger.bind(component="ssh_session", host=host)

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        timeout = self.command_timeout if timeout is None else timeout
        stdout: list[str] = []
        stderr: list[str] = []

        async def pump(reader: asyncssh.SSHReader[str], stream: str, sink: list[str]) -> None:
            while True:
                data = await reader.read(_READ_SIZE)
                if not data:
                    return
                sink.append(data)
                if on_output is not None:
                    on_output(data, stream)

        self._log.debug("running_command", command=command, timeout=timeout)
        try:
            async with self._connection.create_process(
                PATH_PREFIX + command, encoding="utf-8", errors="replace"
            ) as process:
                if sudo_password is not None:
                    process.stdin.write(sudo_password + "\n")
                process.stdin.write_eof()

                try:
                    async with asyncio.timeout(timeout):
                        await asyncio.gather(
                            pump(process.stdout, "stdout", stdout),
                            pump(process.stderr, "stderr", stderr),
                        )
                        await process.wait()
                except TimeoutError:
                    process.close()
                    raise CommandTimeoutError(command, timeout, "".join(stdout)) from None

                exit_code = process.returncode
        except (asyncssh.Error, OSError) as e:
            self._log.warning("command_disconnected", command=command, error=str(e))
            return CommandResult(
                command=command,
                stdout="".join(stdout),
                stderr="".join(stderr),
                disconnected=True,
            )

        result = CommandResult(
            command=command,
            stdout="".join(stdout),
            stderr="".join(stderr),
            exit_code=exit_code,
            disconnected=exit_code is None,
        )
        self._log.debug("command_finished", command=command, exit_code=exit_code)
        return result

    async def run_detached(
        self,
        command: str,
        *,
        timeout: float | None = None,
        sudo_password: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult:
        token = uuid.uuid4().hex[:12]
        log_file = f"{DETACHED_DIR}/update-fleet-{token}.log"
        exit_file = f"{DETACHED_DIR}/update-fleet-{token}.exit"

        inner = f"{command}; echo $? > {exit_file}"
        background = f"nohup setsid sh -c {shlex.quote(inner)} > {log_file} 2>&1"
        if sudo_password is not None:
            # Password arrives on our stdin and is piped to the detached sudo -S
            launcher = f"IFS= read -r _pw; printf '%s\\n' \"$_pw\" | {background} & echo $!"
        else:
            launcher = f"{background} < /dev/null & echo $!"

        launch = await self.run(
            launcher, timeout=BOOKKEEPING_TIMEOUT, sudo_password=sudo_password
        )
        if launch.disconnected:
            return CommandResult(command=command, disconnected=True)

        pid = _parse_exit_code(launch.stdout.splitlines()[-1] if launch.stdout else "")
        if launch.exit_code != 0 or pid is None:
            self._log.warning("detached_launch_failed", command=command, exit_code=launch.exit_code)
            return CommandResult(
                command=command,
                stdout=launch.stdout,
                stderr=launch.stderr,
                exit_code=launch.exit_code or 1,
            )

        handle = DetachedHandle(pid=pid, log_file=log_file, exit_file=exit_file, command=command)
        self._log.info("detached_started", command=command, pid=pid, log_file=log_file)
        return await self._follow(handle, timeout, on_output)

    async def resume(
        self,
        handle: DetachedHandle,
        *,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
    ) -> CommandResult | None:
        probe = await self.run(
            f"test -f {handle.exit_file} -o -f {handle.log_file} && echo present",
            timeout=BOOKKEEPING_TIMEOUT,
        )
        if "present" not in probe.stdout:
            self._log.info("detached_state_missing", pid=handle.pid, exit_file=handle.exit_file)
            return None
        return await self._follow(handle, timeout, on_output)

    async def _follow(
        self,
        handle: DetachedHandle,
        timeout: float | None,
        on_output: OutputCallback | None,
    ) -> CommandResult:
        """Stream a detached command's log until it exits, then read its status."""
        monitor = await self.run(
            f"tail -n +1 -f --pid={handle.pid} {handle.log_file} 2>/dev/null",
            timeout=timeout,
            on_output=on_output,
        )
        if monitor.disconnected:
            return CommandResult(
                command=handle.command, stdout=monitor.stdout, disconnected=True, handle=handle
            )

        status = await self.run(
            f"cat {handle.exit_file} 2>/dev/null; rm -f {handle.log_file} {handle.exit_file}",
            timeout=BOOKKEEPING_TIMEOUT,
        )
        if status.disconnected:
            return CommandResult(
                command=handle.command, stdout=monitor.stdout, disconnected=True, handle=handle
            )

        return CommandResult(
            command=handle.command,
            stdout=monitor.stdout,
            exit_code=_parse_exit_code(status.stdout),
            handle=handle,
        )

    async def close(self) -> None:
        self._connection.close()
        await self._connection.wait_closed()
        self._log.debug("disconnected_from_remote")


class SSHConnector(RemoteConnector):
    """Opens asyncssh sessions to targets."""

    def __init__(self, connect_timeout: float = 30.0, command_timeout: float = 120.0) -> None:
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def connect(self, target: Target) -> SSHRemoteSession:
        connect_kwargs: dict[str, Any] = {
            "host": target.hostname,
            "port": target.port,
            "username": target.username,
        }

        if target.key_file:
            connect_kwargs["client_keys"] = [str(target.key_file)]

        password = target.password
        if password:
            connect_kwargs["password"] = password

        if target.known_hosts:
            connect_kwargs["known_hosts"] = str(target.known_hosts)
        else:
            # Accept any host key
            connect_kwargs["known_hosts"] = None

        logger.info(
            "connecting_to_remote",
            host=target.hostname,
            port=target.port,
            user=target.username,
        )

        try:
            connection = await asyncio.wait_for(
                asyncssh.connect(**connect_kwargs),
                timeout=self.connect_timeout,
            )
        except TimeoutError as e:
            raise ConnectionFailedError(
                f"Connection to {target.hostname} timed out after {self.connect_timeout:g} seconds"
            ) from e
        except (asyncssh.Error, OSError) as e:
            raise ConnectionFailedError(f"Failed to connect to {target.hostname}: {e}") from e

        logger.info("connected_to_remote", host=target.hostname)
        return SSHRemoteSession(connection, target.hostname, self.command_timeout)
