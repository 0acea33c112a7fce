"""Best-effort cleanup for orphaned preview dev servers.

A crashed host process leaves its dev servers running with their ports
bound. This reaps those servers on the next start, before the port
allocator hands the same ports out again.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEV_SERVER_SIGNATURES: tuple[str, ...] = (
    r"\bbun\b.*\bdev\b.*--port\b",
    r"\bnext\b.*\bdev\b",
    r"\bvite\b",
)


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    ppid: int
    args: str


def _list_processes() -> dict[int, ProcessInfo]:
    """Return process table keyed by PID using `ps` output."""
    out = subprocess.check_output(
        ["ps", "-eo", "pid=,ppid=,args="],
        text=True,
        stderr=subprocess.DEVNULL,
    )
    table: dict[int, ProcessInfo] = {}
    for line in out.splitlines():
        parts = line.strip().split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            table[int(parts[0])] = ProcessInfo(
                pid=int(parts[0]), ppid=int(parts[1]), args=parts[2],
            )
        except ValueError:
            continue
    return table


def is_dev_server(args: str, signatures: tuple[str, ...] = DEV_SERVER_SIGNATURES) -> bool:
    return any(re.search(pat, args) for pat in signatures)


def find_stale_preview_processes(
    table: dict[int, ProcessInfo],
    *,
    current_pid: int,
    signatures: tuple[str, ...] = DEV_SERVER_SIGNATURES,
) -> list[ProcessInfo]:
    """Dev servers whose parent is gone (reparented to PID 1 or missing)."""
    stale: list[ProcessInfo] = []
    for proc in table.values():
        if proc.pid == current_pid or proc.ppid == current_pid:
            continue
        if not is_dev_server(proc.args, signatures):
            continue
        if proc.ppid == 1 or proc.ppid not in table:
            stale.append(proc)
    return stale


def cleanup_stale_preview_processes(
    *,
    current_pid: int | None = None,
    signatures: tuple[str, ...] = DEV_SERVER_SIGNATURES,
) -> int:
    """SIGTERM orphaned dev-server process groups. Returns the count signalled."""
    pid = current_pid or os.getpid()
    try:
        table = _list_processes()
    except (OSError, subprocess.CalledProcessError) as exc:
        logger.warning("Cannot list processes for stale preview cleanup: %s", exc)
        return 0

    killed = 0
    for proc in find_stale_preview_processes(table, current_pid=pid, signatures=signatures):
        try:
            try:
                os.killpg(proc.pid, signal.SIGTERM)
            except ProcessLookupError:
                # Not a group leader; signal the process alone.
                os.kill(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger.warning("Cannot reap stale preview pid=%s: %s", proc.pid, exc)
            continue
        killed += 1
        logger.info(
            "Reaped stale preview process pid=%s ppid=%s cmd=%s",
            proc.pid, proc.ppid, proc.args[:180],
        )
    return killed
