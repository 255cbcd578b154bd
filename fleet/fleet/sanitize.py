"""Redaction of secrets from command output and command lines.

Applied before output is broadcast, logged, or stored in history.
"""

from __future__ import annotations

import re

_OUTPUT_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\[sudo\] password for \S+:"), "[sudo] password for ***:"),
    (re.compile(r"^Password:\s*$", re.IGNORECASE | re.MULTILINE), "Password: ***"),
    (re.compile(r"sudo:\s+\d+ incorrect password attempts?"), "sudo: incorrect password attempt"),
    # user:token@host in URLs
    (re.compile(r"(?<=//)[^/@\s]+:[^/@\s]+(?=@)"), "***:***"),
    (
        re.compile(
            r"\b(PASSWORD|PASSWD|SECRET|SECRET_KEY|TOKEN|ACCESS_TOKEN|API_KEY|PRIVATE_KEY"
            r"|PASSPHRASE|CREDENTIAL|AUTH)\s*=\s*\S+",
            re.IGNORECASE,
        ),
        r"\1=***",
    ),
    (
        re.compile(
            r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----",
            re.DOTALL,
        ),
        "[REDACTED PRIVATE KEY]",
    ),
]

_COMMAND_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"echo\s+(['\"]?)[^|'\"]*\1\s*\|\s*sudo\s+-S"), "echo *** | sudo -S"),
    (re.compile(r"sshpass\s+-p\s*\S+"), "sshpass -p ***"),
]

OUTPUT_LIMIT = 5000
ERROR_LIMIT = 2000


def sanitize_output(text: str) -> str:
    """Redact sensitive patterns from command output or error text."""
    for pattern, replacement in _OUTPUT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_command(command: str) -> str:
    """Redact inline secrets from a command line."""
    for pattern, replacement in _COMMAND_PATTERNS:
        command = pattern.sub(replacement, command)
    return sanitize_output(command)


def clip(text: str | None, limit: int) -> str | None:
    """Sanitize and truncate text for storage, keeping the tail."""
    if not text:
        return None
    text = sanitize_output(text)
    if len(text) <= limit:
        return text
    return text[-limit:]
