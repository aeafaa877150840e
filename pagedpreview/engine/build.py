"""Non-preview HTML build.

Produces the HTML a typesetting engine consumes. Unlike the preview,
every stylesheet or content problem is fatal here.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path

from pagedpreview.engine.config import CONFIG_FILENAME
from pagedpreview.engine.errors import BuildError, ConfigValidationError, RegenerationError
from pagedpreview.shared.render.document import render_document
from pagedpreview.shared.services.config_document import load_document
from pagedpreview.shared.services.durable_write import atomic_write_text
from pagedpreview.shared.services.scratch import iter_source_files

logger = logging.getLogger(__name__)

ASSET_SUFFIXES = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp",
    ".woff", ".woff2", ".ttf", ".otf",
})


def build_html(source_dir: Path, output_dir: Path | None = None) -> Path:
    """Build ``index.html`` (plus referenced assets) into ``output_dir``.

    Defaults to ``<source>/dist``. Raises BuildError.
    """
    source = source_dir.expanduser().resolve()
    if not source.is_dir():
        raise BuildError([f"Source directory not found: {source}"])
    out = (output_dir or source / "dist").expanduser().resolve()

    try:
        document = load_document(source / CONFIG_FILENAME)
    except ConfigValidationError as exc:
        raise BuildError(exc.issues) from exc
    try:
        result = render_document(source, document, strict=True, preview_runtime=False)
    except RegenerationError as exc:
        raise BuildError([exc.reason]) from exc

    out.mkdir(parents=True, exist_ok=True)
    target = out / "index.html"
    atomic_write_text(target, result.html)

    copied = 0
    for rel in iter_source_files(source):
        if rel.suffix.lower() not in ASSET_SUFFIXES:
            continue
        src = source / rel
        if out in src.parents:
            continue
        dst = out / rel
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)
        copied += 1

    for line in result.diagnostics:
        logger.warning("Build warning: %s", line)
    logger.info("Built %s (%d asset(s) copied)", target, copied)
    return target
