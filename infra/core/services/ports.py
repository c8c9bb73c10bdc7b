"""
Port ownership: classify who holds a port and explain conflicts.

Pure functions layered on top of a Probe.  The system-facing side
(finding the PID behind a port, killing it, polling for release) lives
in ``infra.adapters.process.ports``.

Classification order:

    1. no owning PID                                   → free
    2. PID == the PID we recorded for the service      → this
    3. command line mentions the service ID or one of
       its process names (substring)                   → this
    4. command line mentions the orchestrator marker   → infra
    5. anything else                                   → external
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from infra.core.models.ports import Ownership, Probe

DEFAULT_MARKER = "infra"

_MAX_COMMAND_LEN = 160

_REMEDIES = {
    Ownership.THIS: (
        "This looks like a stale infra-managed process. "
        "Run 'infra shutdown' or rerun the command to reclaim it."
    ),
    Ownership.INFRA: (
        "Another infra session is using this port. "
        "Run 'infra shutdown' in that session or stop the PID manually."
    ),
    Ownership.EXTERNAL: (
        "Stop that process or change infra's configured port for this service."
    ),
}


def parse_port(value: str | int | None) -> int:
    """Parse a port string; anything unparsable or out of range is 0."""
    if value is None:
        return 0
    try:
        port = int(str(value).strip())
    except ValueError:
        return 0
    if port < 0 or port > 65535:
        return 0
    return port


def classify_ownership(
    probe: Probe,
    expected_pid: int | None = None,
    identities: Iterable[str] = (),
    marker: str = DEFAULT_MARKER,
) -> Ownership:
    """Decide who owns the port described by ``probe``.

    Args:
        probe: Observation of the port.
        expected_pid: PID the orchestrator last recorded for the service.
        identities: Service ID and known process names.
        marker: Substring identifying another orchestrator instance.

    Returns:
        Exactly one Ownership value; never raises.
    """
    if probe.is_free:
        return Ownership.FREE

    if expected_pid is not None and probe.pid == expected_pid:
        return Ownership.THIS

    command = probe.command or ""
    for ident in identities:
        if ident and ident in command:
            return Ownership.THIS

    if marker and marker in command:
        return Ownership.INFRA

    return Ownership.EXTERNAL


def classify_probe(
    probe: Probe,
    expected_pid: int | None = None,
    identities: Iterable[str] = (),
    marker: str = DEFAULT_MARKER,
) -> Probe:
    """Return a copy of ``probe`` with its ownership field (re)derived."""
    ownership = classify_ownership(probe, expected_pid, identities, marker)
    return probe.model_copy(update={"ownership": ownership})


def format_conflict_message(service: str, probe: Probe) -> str:
    """Human-actionable explanation of why ``service`` cannot bind its port."""
    if probe.is_free:
        return f"{service} port {probe.port} is free"

    command = shorten_command(probe.command)
    base = f"{service} port {probe.port} is in use by PID {probe.pid}"
    if command:
        base = f"{base} ({command})"

    remedy = _REMEDIES.get(probe.ownership)
    if remedy:
        return f"{base}. {remedy}"
    return base


def shorten_command(
    command: str,
    cwd: Path | None = None,
    home: Path | None = None,
) -> str:
    """Make a command line readable in a one-line conflict message.

    Absolute paths under the working directory become ``./…`` and paths
    under the home directory become ``~/…``.  Long results are truncated.
    """
    command = (command or "").strip()
    if not command:
        return ""

    cwd_str = str(cwd or _safe_cwd() or "")
    home_str = str(home or Path.home())

    parts = []
    for token in command.split():
        if token.startswith("/"):
            token = _relative_token(token, cwd_str, home_str)
        parts.append(token)

    short = " ".join(parts)
    if len(short) > _MAX_COMMAND_LEN:
        short = short[: _MAX_COMMAND_LEN - 3] + "..."
    return short


def _relative_token(token: str, cwd: str, home: str) -> str:
    if cwd and cwd != "/" and (token == cwd or token.startswith(cwd + "/")):
        rel = token[len(cwd):].lstrip("/")
        return f"./{rel}" if rel else "."
    if home and home != "/" and (token == home or token.startswith(home + "/")):
        return "~" + token[len(home):]
    return token


def _safe_cwd() -> Path | None:
    try:
        return Path(os.getcwd())
    except OSError:
        return None
