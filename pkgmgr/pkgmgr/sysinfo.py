"""Host facts gathered alongside each check.

One compound command prints a marked section per fact::

    ===OS===
    PRETTY_NAME="Ubuntu 22.04.4 LTS"
    VERSION_ID="22.04"
    ===KERNEL===
    5.15.0-105-generic
    ...
    ===REBOOT===
    REBOOT_REQUIRED

Sections are joined with ``;`` so a tool missing on a minimal host (no
``hostname`` in a container, no ``free`` on busybox) leaves its section
empty instead of ending the chain.

A reboot is required when ``/var/run/reboot-required`` exists (Debian,
Ubuntu), when ``needs-restarting -r`` exits 1 (RHEL, Fedora), or otherwise
when the running kernel is not the newest one under ``/lib/modules``.
"""

from __future__ import annotations

import structlog

from fleet.models import SystemInfo

logger = structlog.get_logger(__name__)

REBOOT_REQUIRED = "REBOOT_REQUIRED"

SYSTEM_INFO_COMMAND = (
    'echo "===OS==="; cat /etc/os-release 2>/dev/null; '
    'echo "===KERNEL==="; uname -r 2>/dev/null; '
    'echo "===HOSTNAME==="; (hostname 2>/dev/null || cat /etc/hostname 2>/dev/null); '
    'echo "===UPTIME==="; (uptime -p 2>/dev/null || uptime 2>/dev/null); '
    'echo "===ARCH==="; uname -m 2>/dev/null; '
    'echo "===CPU==="; nproc 2>/dev/null; '
    'echo "===MEM==="; free -h 2>/dev/null | grep Mem; '
    'echo "===DISK==="; df -h / 2>/dev/null | tail -1; '
    'echo "===REBOOT==="; '
    f'if [ -f /var/run/reboot-required ]; then echo "{REBOOT_REQUIRED}"; '
    "elif command -v needs-restarting >/dev/null 2>&1; then "
    f'needs-restarting -r >/dev/null 2>&1; [ $? -eq 1 ] && echo "{REBOOT_REQUIRED}" || echo "NO_REBOOT"; '
    "else RUNNING=$(uname -r); LATEST=$(ls -1v /lib/modules/ 2>/dev/null | tail -1); "
    f'[ -n "$LATEST" ] && [ "$RUNNING" != "$LATEST" ] && echo "{REBOOT_REQUIRED}" || echo "NO_REBOOT"; fi'
)


def split_sections(stdout: str) -> dict[str, str]:
    """Split the output on ``===NAME===`` lines.

    Text before the first marker is ignored. A repeated marker replaces the
    earlier section.
    """
    sections: dict[str, str] = {}
    current: str | None = None
    lines: list[str] = []
    for line in stdout.splitlines():
        stripped = line.strip()
        if len(stripped) > 6 and stripped.startswith("===") and stripped.endswith("==="):
            if current is not None:
                sections[current] = "\n".join(lines).strip()
            current = stripped.strip("=")
            lines = []
        else:
            lines.append(line)
    if current is not None:
        sections[current] = "\n".join(lines).strip()
    return sections


def parse_os_release(section: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, dropping surrounding quotes."""
    fields: dict[str, str] = {}
    for line in section.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            fields[key.strip()] = value.strip().strip('"').strip("'")
    return fields


def _memory(section: str) -> str:
    # Mem:  15Gi  4.2Gi  ...: the second column is the total
    parts = section.split()
    return parts[1] if len(parts) >= 2 else ""


def _disk(section: str) -> str:
    # /dev/sda1  40G  12G  26G  30%  /
    parts = section.split()
    if len(parts) >= 5:
        return f"{parts[2]}/{parts[1]} ({parts[4]})"
    if len(parts) >= 2:
        return parts[1]
    return ""


def parse_system_info(stdout: str) -> SystemInfo:
    """Parse the output of :data:`SYSTEM_INFO_COMMAND`.

    Missing or garbled sections leave their fields empty; the reboot flag
    is set only by an explicit ``REBOOT_REQUIRED``.
    """
    sections = split_sections(stdout)
    os_fields = parse_os_release(sections.get("OS", ""))

    def first_line(name: str) -> str:
        lines = sections.get(name, "").splitlines()
        return lines[0].strip() if lines else ""

    info = SystemInfo(
        os_name=os_fields.get("PRETTY_NAME") or os_fields.get("NAME") or "Unknown",
        os_version=os_fields.get("VERSION_ID") or os_fields.get("VERSION") or "",
        kernel=first_line("KERNEL"),
        hostname=first_line("HOSTNAME"),
        uptime=first_line("UPTIME"),
        arch=first_line("ARCH"),
        cpu_cores=first_line("CPU"),
        memory=_memory(sections.get("MEM", "")),
        disk=_disk(sections.get("DISK", "")),
        needs_reboot=first_line("REBOOT") == REBOOT_REQUIRED,
    )
    logger.debug("system_info_parsed", sections=sorted(sections), needs_reboot=info.needs_reboot)
    return info
