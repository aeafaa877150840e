"""Best-effort cleanup for stale content server processes.

A control host that crashes or is killed with SIGKILL leaves its content
server child behind, still holding a port and a scratch directory. On
startup we reap such orphans so they do not accumulate.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from typing import Callable

CONTENT_SERVER_PATTERN = re.compile(r"-m\s+pagedpreview\.server\.content_app\b")


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
        line = line.strip()
        if not line:
            continue
        parts = line.split(maxsplit=2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue
        table[pid] = ProcessInfo(pid=pid, ppid=ppid, args=parts[2])
    return table


def find_orphaned_content_servers(
    table: dict[int, ProcessInfo], current_pid: int,
) -> list[ProcessInfo]:
    """Content servers whose parent is gone (reparented to PID 1 or missing)."""
    orphans = []
    for proc in table.values():
        if proc.pid == current_pid or proc.ppid == current_pid:
            continue
        if not CONTENT_SERVER_PATTERN.search(proc.args):
            continue
        if proc.ppid == 1 or proc.ppid not in table:
            orphans.append(proc)
    return orphans


def cleanup_stale_content_servers(
    *,
    current_pid: int | None = None,
    log: Callable[[str], None] | None = None,
) -> int:
    """SIGTERM orphaned content servers. Returns how many were signalled."""
    pid = current_pid or os.getpid()
    logger = log or (lambda _: None)
    killed = 0

    for proc in find_orphaned_content_servers(_list_processes(), pid):
        try:
            os.kill(proc.pid, signal.SIGTERM)
            killed += 1
            logger(
                f"Reaped stale content server pid={proc.pid} "
                f"ppid={proc.ppid} cmd={proc.args[:180]}"
            )
        except ProcessLookupError:
            continue
        except PermissionError as exc:
            logger(f"Failed to reap stale process pid={proc.pid}: {exc}")

    return killed
