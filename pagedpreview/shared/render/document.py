"""Assemble the single self-contained HTML document.

Shared by the preview (lenient: problems become diagnostics) and the
strict build (problems raise BuildError). Output depends only on the
inputs; nothing time- or environment-dependent is embedded.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pagedpreview.engine.errors import BuildError, RegenerationError
from pagedpreview.shared.render.css_imports import ASSETS_DIR, resolve_imports
from pagedpreview.shared.render.markdown import render_sources
from pagedpreview.shared.services.config_document import ConfigurationDocument

logger = logging.getLogger(__name__)

DEFAULT_STYLESHEET = ASSETS_DIR / "default.css"

PREVIEW_HEAD = '<link rel="stylesheet" href="interface.css">'
PREVIEW_BODY = '<script src="interface.js"></script>'


@dataclass
class RenderResult:
    html: str
    diagnostics: list[str] = field(default_factory=list)


def stylesheet_paths(source_dir: Path, document: ConfigurationDocument) -> list[Path]:
    """Configured stylesheets, or every ``.css`` in the source root."""
    if document.styles is not None:
        return [source_dir / name for name in document.styles]
    return sorted(p for p in source_dir.glob("*.css") if p.is_file())


def page_css(document: ConfigurationDocument) -> str:
    page = document.page or {}
    rules = []
    if page.get("size"):
        rules.append(f"size: {page['size']};")
    if page.get("bleed"):
        rules.append(f"bleed: {page['bleed']};")
    margins = page.get("margins") or {}
    for side in ("top", "bottom"):
        if side in margins:
            rules.append(f"margin-{side}: {margins[side]};")
    blocks = [f"@page {{ {' '.join(rules)} }}"] if rules else []
    if "inside" in margins or "outside" in margins:
        inside = margins.get("inside", "auto")
        outside = margins.get("outside", "auto")
        blocks.append(f"@page :left {{ margin-left: {outside}; margin-right: {inside}; }}")
        blocks.append(f"@page :right {{ margin-left: {inside}; margin-right: {outside}; }}")
    return "\n".join(blocks)


def _collect_styles(
    source_dir: Path,
    document: ConfigurationDocument,
    *,
    strict: bool,
    errors: list[str],
    diagnostics: list[str],
) -> list[str]:
    blocks = []
    sheets = list(stylesheet_paths(source_dir, document))
    if not document.disable_default_styles and DEFAULT_STYLESHEET.is_file():
        sheets.insert(0, DEFAULT_STYLESHEET)
    for sheet in sheets:
        label = sheet.name if sheet == DEFAULT_STYLESHEET else sheet.relative_to(source_dir).as_posix()
        try:
            text = sheet.read_text(encoding="utf-8")
        except FileNotFoundError:
            (errors if strict else diagnostics).append(f"Stylesheet not found: {label}")
            continue
        except (OSError, UnicodeDecodeError) as exc:
            (errors if strict else diagnostics).append(f"Could not read stylesheet {label}: {exc}")
            continue
        resolved = resolve_imports(text, sheet, fail_on_missing=strict)
        errors.extend(resolved.errors)
        diagnostics.extend(resolved.warnings)
        blocks.append(f"/* Stylesheet: {label} */\n{resolved.css}")
    return blocks


def render_document(
    source_dir: Path,
    document: ConfigurationDocument,
    *,
    strict: bool = False,
    preview_runtime: bool = True,
) -> RenderResult:
    """Render the source tree into one HTML document.

    Raises RegenerationError when there is nothing to render, and
    BuildError in strict mode when any stylesheet or content problem was
    found.
    """
    errors: list[str] = []
    diagnostics: list[str] = []

    content = render_sources(source_dir, document)
    if strict:
        errors.extend(content.errors)
    else:
        diagnostics.extend(content.errors)
    diagnostics.extend(content.diagnostics)
    if not content.articles:
        raise RegenerationError(f"No Markdown files found in {source_dir.name or source_dir}")

    styles = _collect_styles(
        source_dir, document, strict=strict, errors=errors, diagnostics=diagnostics,
    )
    if strict and errors:
        raise BuildError(errors)
    # Lenient mode: hard errors are still surfaced.
    diagnostics = errors + diagnostics

    title = document.title or content.articles[0].slug
    head = ['<meta charset="utf-8">', f"<title>{html.escape(title)}</title>"]
    for author in document.authors or []:
        head.append(f'<meta name="author" content="{html.escape(author, quote=True)}">')
    if document.description:
        head.append(
            f'<meta name="description" content="{html.escape(document.description, quote=True)}">'
        )
    for key, value in sorted((document.metadata or {}).items()):
        head.append(
            f'<meta name="{html.escape(key, quote=True)}" '
            f'content="{html.escape(str(value), quote=True)}">'
        )
    page_rules = page_css(document)
    if page_rules:
        head.append(f"<style>\n{page_rules}\n</style>")
    for block in styles:
        head.append(f"<style>\n{block}\n</style>")
    if preview_runtime:
        head.append(PREVIEW_HEAD)

    body = [f'<article id="{a.slug}">\n{a.html}</article>' for a in content.articles]
    if preview_runtime:
        body.append(PREVIEW_BODY)

    text = (
        "<!DOCTYPE html>\n<html>\n<head>\n"
        + "\n".join(head)
        + "\n</head>\n<body>\n"
        + "\n".join(body)
        + "\n</body>\n</html>\n"
    )
    for line in diagnostics:
        logger.warning("Render diagnostic: %s", line.splitlines()[0])
    return RenderResult(html=text, diagnostics=diagnostics)


def render_error_page(message: str) -> str:
    """Placeholder document shown when regeneration fails."""
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        "<title>Preview unavailable</title>\n"
        f"{PREVIEW_HEAD}\n</head>\n<body class=\"pagedpreview-error\">\n"
        f"<pre>{html.escape(message)}</pre>\n{PREVIEW_BODY}\n</body>\n</html>\n"
    )
