"""Disposable working copy of a source tree for one preview session.

The scratch directory holds recognized source files, the preview runtime
assets, and the generated ``preview.html``. It is exclusively owned by
the session that created it and removed when that session ends.
"""
from __future__ import annotations

import logging
import secrets
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from pagedpreview.engine.config import CONFIG_FILENAME
from pagedpreview.engine.errors import (
    ConfigValidationError,
    PreviewError,
    RegenerationError,
    StartupError,
)
from pagedpreview.shared.render.css_imports import ASSETS_DIR
from pagedpreview.shared.render.document import render_document, render_error_page
from pagedpreview.shared.services.config_document import load_document
from pagedpreview.shared.services.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "pagedpreview-"
ENTRY_DOCUMENT = "preview.html"
RUNTIME_FILES = ("interface.js", "interface.css")

RECOGNIZED_SUFFIXES = frozenset({
    ".md", ".markdown", ".yaml", ".yml", ".css",
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp",
    ".woff", ".woff2", ".ttf", ".otf",
})
SKIP_DIRS = frozenset({
    ".git", "node_modules", "dist", "build", ".tmp", ".pagedmd", "__pycache__",
})


def scratch_dir_name() -> str:
    """``pagedpreview-<epoch ms>-<random hex>``; unique across concurrent sessions."""
    return f"{SCRATCH_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(8)}"


def iter_source_files(source_dir: Path):
    """Yield recognized files under ``source_dir`` as paths relative to it."""
    stack = [source_dir]
    while stack:
        current = stack.pop()
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError as exc:
            logger.warning("Skipping unreadable directory %s: %s", current, exc)
            continue
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir():
                if entry.name not in SKIP_DIRS and not entry.is_symlink():
                    stack.append(entry)
            elif entry.suffix.lower() in RECOGNIZED_SUFFIXES:
                yield entry.relative_to(source_dir)


@dataclass
class RegenerationResult:
    path: Path
    diagnostics: list[str] = field(default_factory=list)
    changed: bool = True


class ScratchDirectory:
    """One session's scratch tree. All methods are blocking; call via a worker thread."""

    def __init__(self, base: Path | None = None, name: str | None = None) -> None:
        self.base = Path(base) if base is not None else None
        self.path: Path | None = None
        self._name = name or scratch_dir_name()
        self._removed = False

    def _require_path(self) -> Path:
        if self.path is None:
            raise RuntimeError("scratch directory has not been created")
        return self.path

    @property
    def entry_document(self) -> Path:
        return self._require_path() / ENTRY_DOCUMENT

    def create(self) -> Path:
        base = self.base or Path(tempfile.gettempdir())
        path = base / self._name
        try:
            base.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except OSError as exc:
            raise StartupError("scratch directory", f"cannot create {path}: {exc}") from exc
        self.path = path
        logger.info("Created scratch directory %s", path)
        return path

    def populate(self, source_dir: Path) -> int:
        """Copy recognized source files and runtime assets. Returns files copied."""
        copied = self.sync_sources(source_dir)
        root = self._require_path()
        for name in RUNTIME_FILES:
            try:
                shutil.copyfile(ASSETS_DIR / name, root / name)
            except OSError as exc:
                raise StartupError("runtime assets", f"cannot copy {name}: {exc}") from exc
        return copied

    def sync_sources(self, source_dir: Path) -> int:
        """Mirror new or modified recognized files from the source tree."""
        root = self._require_path()
        copied = 0
        for rel in iter_source_files(source_dir):
            src = source_dir / rel
            dst = root / rel
            try:
                src_stat = src.stat()
                if dst.exists():
                    dst_stat = dst.stat()
                    if dst_stat.st_size == src_stat.st_size and dst_stat.st_mtime >= src_stat.st_mtime:
                        continue
                dst.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dst)
                copied += 1
            except OSError as exc:
                # File vanished mid-save or is unreadable; the next event will retry.
                logger.debug("Skipping %s during sync: %s", rel, exc)
        logger.debug("Synced %d file(s) from %s into %s", copied, source_dir, root)
        return copied

    def regenerate(self, source_dir: Path) -> RegenerationResult:
        """Render the entry document from the source tree and write it atomically.

        Raises RegenerationError; the previous document is left in place.
        """
        self._require_path()
        try:
            document = load_document(source_dir / CONFIG_FILENAME)
            result = render_document(source_dir, document)
        except ConfigValidationError as exc:
            raise RegenerationError(str(exc)) from exc
        except PreviewError:
            raise
        except OSError as exc:
            raise RegenerationError(str(exc)) from exc
        except Exception as exc:
            logger.exception("Unexpected failure rendering %s", source_dir)
            raise RegenerationError(f"{type(exc).__name__}: {exc}") from exc
        return self._write_entry(result.html, result.diagnostics)

    def write_error_page(self, message: str) -> RegenerationResult:
        return self._write_entry(render_error_page(message), [message])

    def _write_entry(self, text: str, diagnostics: list[str]) -> RegenerationResult:
        target = self.entry_document
        try:
            if target.exists() and target.read_text(encoding="utf-8") == text:
                return RegenerationResult(target, diagnostics, changed=False)
            atomic_write_text(target, text)
        except OSError as exc:
            raise RegenerationError(f"cannot write {target.name}: {exc}") from exc
        return RegenerationResult(target, diagnostics)

    def remove(self) -> None:
        """Delete the scratch tree. Idempotent; failures are logged, never raised."""
        if self.path is None or self._removed:
            return
        try:
            shutil.rmtree(self.path)
            logger.info("Removed scratch directory %s", self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove scratch directory %s: %s", self.path, exc)
            return
        self._removed = True
