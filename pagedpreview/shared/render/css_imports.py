"""Inline ``@import`` statements so stylesheets can be embedded in one document.

Both the preview pipeline and the strict build use this. The preview
passes ``fail_on_missing=False`` so a broken import becomes a warning
instead of blocking the rebuild.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

IMPORT_RE = re.compile(r"""@import\s+(?:url\()?['"]([^'"]+)['"](?:\))?;?""")
REMOTE_PREFIXES = ("http://", "https://", "//")

ASSETS_DIR = Path(__file__).resolve().parent.parent.parent / "assets"


@dataclass
class ImportResolution:
    css: str
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def diagnostics(self) -> list[str]:
        return self.errors + self.warnings


def _line_number(text: str, index: int) -> int:
    return text.count("\n", 0, index) + 1


def _target_path(name: str, origin: Path, assets_dir: Path) -> Path:
    # Leading slash refers to bundled assets, not the filesystem root.
    if name.startswith("/"):
        return assets_dir / name.lstrip("/")
    return (origin.parent / name).resolve()


def resolve_imports(
    css: str,
    origin: Path,
    *,
    fail_on_missing: bool = True,
    assets_dir: Path = ASSETS_DIR,
    _chain: tuple[Path, ...] = (),
) -> ImportResolution:
    """Recursively inline local imports found in ``css``.

    ``origin`` is the stylesheet's own path, used to resolve relative
    imports and for messages. Remote imports are left untouched, as is any
    import that could not be resolved.
    """
    result = ImportResolution(css="")
    origin = origin.resolve()
    if origin in _chain:
        cycle = " -> ".join(p.name for p in (*_chain, origin))
        result.errors.append(f"Circular import detected: {cycle}")
        return result
    chain = (*_chain, origin)

    def report(message: str) -> None:
        (result.errors if fail_on_missing else result.warnings).append(message)

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name.startswith(REMOTE_PREFIXES):
            return match.group(0)
        where = f"{origin.name}:{_line_number(css, match.start())}"
        target = _target_path(name, origin, assets_dir)
        if not target.is_file():
            report(
                f"CSS import file not found: {name}\n"
                f"  Referenced in: {where}\n"
                f"  Resolved path: {target}"
            )
            return match.group(0)
        try:
            imported = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            report(
                f"CSS import file found but could not be read: {target}\n"
                f"  Referenced in: {where}\n"
                f"  Error: {exc}"
            )
            return match.group(0)

        nested = resolve_imports(
            imported,
            target,
            fail_on_missing=fail_on_missing,
            assets_dir=assets_dir,
            _chain=chain,
        )
        result.warnings.extend(nested.warnings)
        result.errors.extend(nested.errors)
        return f"\n/* From: {name} ({origin.name}) */\n{nested.css}\n/* End: {name} */\n"

    result.css = IMPORT_RE.sub(replace, css)
    if result.warnings:
        logger.debug("CSS import warnings in %s: %d", origin, len(result.warnings))
    return result
