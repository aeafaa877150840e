"""Markdown to HTML conversion for the content tree."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from markdown_it import MarkdownIt

from pagedpreview.shared.services.config_document import ConfigurationDocument

logger = logging.getLogger(__name__)

MARKDOWN_SUFFIXES = (".md", ".markdown")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass
class Article:
    slug: str
    html: str
    source: str


@dataclass
class RenderedContent:
    articles: list[Article] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def slugify(name: str) -> str:
    stem = name.rsplit(".", 1)[0].lower()
    return _SLUG_RE.sub("-", stem).strip("-") or "section"


def create_engine() -> MarkdownIt:
    return MarkdownIt("commonmark", {"html": True}).enable(["table", "strikethrough"])


def _content_files(source_dir: Path, document: ConfigurationDocument, out: RenderedContent) -> list[Path]:
    if document.files:
        found = []
        for name in document.files:
            path = source_dir / name
            if path.is_file():
                found.append(path)
            else:
                out.errors.append(f"Content file listed in configuration not found: {name}")
        return found
    return sorted(
        (p for p in source_dir.iterdir() if p.is_file() and p.suffix.lower() in MARKDOWN_SUFFIXES),
        key=lambda p: p.name,
    )


def render_sources(
    source_dir: Path,
    document: ConfigurationDocument,
    engine: MarkdownIt | None = None,
) -> RenderedContent:
    """Render content files into articles.

    Ordering comes from ``document.files`` when set, otherwise every
    Markdown file in the source root alphabetically. Files that cannot be
    read are reported and skipped.
    """
    md = engine or create_engine()
    out = RenderedContent()
    used: set[str] = set()
    for path in _content_files(source_dir, document, out):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            out.errors.append(f"Could not read {path.name}: {exc}")
            continue

        slug = slugify(path.name)
        base, n = slug, 2
        while slug in used:
            slug = f"{base}-{n}"
            n += 1
        used.add(slug)
        out.articles.append(Article(slug=slug, html=md.render(text), source=path.name))

    logger.debug("Rendered %d article(s) from %s", len(out.articles), source_dir)
    return out
