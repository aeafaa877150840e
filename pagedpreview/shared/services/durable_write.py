from __future__ import annotations

import os
import secrets
import time
from pathlib import Path


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist rename/unlink metadata."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some platforms/filesystems do not support directory fsync.
        pass


def unique_temp_path(path: Path) -> Path:
    """Sibling temp path unique across writers: ``<name>.tmp.<ms>.<hex>``."""
    stamp = int(time.time() * 1000)
    return path.with_name(f"{path.name}.tmp.{stamp}.{secrets.token_hex(4)}")


def write_synced(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to path and fsync the file before returning."""
    with open(path, "w", encoding=encoding, newline="") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())


def commit(tmp_path: Path, path: Path) -> None:
    """Atomically move a fully written temp file over ``path``."""
    os.replace(tmp_path, path)
    _fsync_dir(path.parent)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Atomically write text to path and fsync file + parent directory."""
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = unique_temp_path(path)
    try:
        write_synced(tmp_path, content, encoding=encoding)
        commit(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass
