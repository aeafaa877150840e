"""Validation of browser-supplied filesystem paths.

Every path that arrives through the control API is checked here before
anything touches the filesystem: traversal components and NUL bytes are
rejected on the raw string, then the resolved location (following
symlinks) must stay inside the permitted root.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path, PurePosixPath
from urllib.parse import unquote

from pagedpreview.engine.errors import PathSecurityError

logger = logging.getLogger(__name__)

_MAX_DECODE_ROUNDS = 5


def _decode(raw: str) -> str:
    """URL-decode until stable so ``%252e%252e`` cannot smuggle ``..``."""
    current = raw
    for _ in range(_MAX_DECODE_ROUNDS):
        decoded = unquote(current)
        if decoded == current:
            return decoded
        current = decoded
    raise PathSecurityError("Invalid path", f"too many encoding layers: {raw!r}")


def check_raw_path(raw: str) -> str:
    """Reject malformed input without consulting the filesystem."""
    decoded = _decode(raw)
    if "\x00" in decoded:
        raise PathSecurityError("Invalid path", "NUL byte in path")
    parts = PurePosixPath(decoded.replace("\\", "/")).parts
    if ".." in parts:
        raise PathSecurityError("Path traversal is not allowed", f"requested={raw!r}")
    return decoded


def resolve_within_root(raw: str | None, root: Path) -> Path:
    """Resolve a requested path against ``root`` and confine it there.

    Relative paths are interpreted relative to the root; ``~`` expands to
    the user's home. An empty request means the root itself.
    """
    root_resolved = root.resolve()
    if raw is None or not raw.strip():
        return root_resolved

    decoded = check_raw_path(raw.strip())
    candidate = Path(decoded).expanduser()
    if not candidate.is_absolute():
        candidate = root_resolved / candidate
    resolved = candidate.resolve(strict=False)
    if not is_within(resolved, root_resolved):
        raise PathSecurityError(
            "Path is outside the permitted directory",
            f"requested={raw!r} resolved={resolved} root={root_resolved}",
        )
    return resolved


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def list_directories(raw: str | None, root: Path) -> dict:
    """Navigable subdirectories of a location under ``root``.

    Hidden entries and unreadable children are skipped. Raises
    PathSecurityError for rejected input and FileNotFoundError /
    NotADirectoryError for locations that do not exist.
    """
    current = resolve_within_root(raw, root)
    if not current.exists():
        raise FileNotFoundError(str(current))
    if not current.is_dir():
        raise NotADirectoryError(str(current))

    root_resolved = root.resolve()
    directories = []
    with os.scandir(current) as it:
        for entry in it:
            if entry.name.startswith("."):
                continue
            try:
                if not entry.is_dir():
                    continue
            except OSError:
                continue
            entry_path = Path(entry.path)
            if not is_within(entry_path.resolve(), root_resolved):
                continue
            directories.append({"name": entry.name, "path": str(entry_path)})
    directories.sort(key=lambda d: d["name"].lower())

    at_root = current == root_resolved
    return {
        "currentPath": str(current),
        "root": str(root_resolved),
        "isAtRoot": at_root,
        "parent": None if at_root else str(current.parent),
        "directories": directories,
    }
