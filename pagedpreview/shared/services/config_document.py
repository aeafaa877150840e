"""Project configuration document (``manifest.yaml``).

Loading, schema validation and serialization. Writes go through
:mod:`pagedpreview.shared.services.config_writer`; this module never
touches the file for writing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from pagedpreview.engine.errors import ConfigValidationError

logger = logging.getLogger(__name__)

EXTENSIONS = ("ttrpg", "dimm-city", "containers")
PLUGIN_TYPES = ("local", "package", "builtin", "remote")
MARGIN_SIDES = ("top", "bottom", "inside", "outside")
PLUGIN_KEYS = {
    "type", "path", "name", "version", "url", "integrity",
    "enabled", "options", "priority",
}

# Serialization order of top-level keys.
FIELD_ORDER = (
    "title",
    "authors",
    "description",
    "page",
    "styles",
    "files",
    "extensions",
    "plugins",
    "metadata",
    "disableDefaultStyles",
)


def _is_safe_relative(value: str) -> bool:
    normalized = value.replace("\\", "/")
    pure = PurePosixPath(normalized)
    return not pure.is_absolute() and ".." not in pure.parts and ":" not in normalized[:3]


def _check_string_list(
    data: dict[str, Any], key: str, issues: list[str], *, relative: bool = False,
) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        issues.append(f"{key} must be a list")
        return None
    out: list[str] = []
    for i, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            issues.append(f"{key}[{i}] must be a non-empty string")
            continue
        if relative and not _is_safe_relative(item):
            issues.append(f"{key}[{i}] must be a relative path without '..': {item}")
            continue
        out.append(item)
    return out


def _check_page(value: Any, issues: list[str]) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        issues.append("page must be a mapping")
        return None
    page: dict[str, Any] = {}
    for key, item in value.items():
        if key in ("size", "bleed"):
            if not isinstance(item, str) or not item.strip():
                issues.append(f"page.{key} must be a non-empty string")
                continue
            page[key] = item
        elif key == "margins":
            if not isinstance(item, dict):
                issues.append("page.margins must be a mapping")
                continue
            margins: dict[str, str] = {}
            for side, amount in item.items():
                if side not in MARGIN_SIDES:
                    issues.append(
                        f"page.margins.{side} is not one of {', '.join(MARGIN_SIDES)}"
                    )
                elif not isinstance(amount, str) or not amount.strip():
                    issues.append(f"page.margins.{side} must be a non-empty string")
                else:
                    margins[side] = amount
            page["margins"] = margins
        else:
            issues.append(f"page.{key} is not a recognized page setting")
    return page


def _check_plugin(index: int, plugin: Any, issues: list[str]) -> Any:
    where = f"plugins[{index}]"
    if isinstance(plugin, str):
        if not plugin.strip():
            issues.append(f"{where} must be a non-empty string")
        return plugin
    if not isinstance(plugin, dict):
        issues.append(f"{where} must be a path string or a mapping")
        return None
    unknown = set(plugin) - PLUGIN_KEYS
    if unknown:
        issues.append(f"{where} has unknown keys: {', '.join(sorted(unknown))}")
    ptype = plugin.get("type")
    if ptype is not None and ptype not in PLUGIN_TYPES:
        issues.append(f"{where}.type must be one of {', '.join(PLUGIN_TYPES)}")
    path = plugin.get("path")
    if path is not None and (not isinstance(path, str) or not _is_safe_relative(path)):
        issues.append(f"{where}.path must be a relative path without '..'")
    for key in ("name", "version", "url", "integrity"):
        if key in plugin and not isinstance(plugin[key], str):
            issues.append(f"{where}.{key} must be a string")
    if "enabled" in plugin and not isinstance(plugin["enabled"], bool):
        issues.append(f"{where}.enabled must be true or false")
    if "options" in plugin and not isinstance(plugin["options"], dict):
        issues.append(f"{where}.options must be a mapping")
    if "priority" in plugin:
        priority = plugin["priority"]
        if isinstance(priority, bool) or not isinstance(priority, int) or not 0 <= priority <= 1000:
            issues.append(f"{where}.priority must be an integer between 0 and 1000")
    if not any(plugin.get(k) for k in ("path", "name", "url")):
        issues.append(f"{where} needs at least one of path, name or url")
    return plugin


@dataclass
class ConfigurationDocument:
    """Validated project settings. Every field is optional."""

    title: str | None = None
    authors: list[str] | None = None
    description: str | None = None
    page: dict[str, Any] | None = None
    styles: list[str] | None = None
    files: list[str] | None = None
    extensions: list[str] | None = None
    plugins: list[Any] | None = None
    metadata: dict[str, Any] | None = None
    disable_default_styles: bool = False
    _explicit: set[str] = field(default_factory=set, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigurationDocument:
        """Validate a raw mapping. Raises ConfigValidationError listing every issue."""
        if not isinstance(data, dict):
            raise ConfigValidationError(["configuration must be a mapping"])

        issues: list[str] = []
        unknown = [k for k in data if k not in FIELD_ORDER]
        for key in unknown:
            issues.append(f"{key} is not a recognized setting")

        title = data.get("title")
        if title is not None and (not isinstance(title, str) or not title.strip()):
            issues.append("title must be a non-empty string")
        description = data.get("description")
        if description is not None and not isinstance(description, str):
            issues.append("description must be a string")

        authors = _check_string_list(data, "authors", issues)
        styles = _check_string_list(data, "styles", issues, relative=True)
        files = _check_string_list(data, "files", issues, relative=True)
        extensions = _check_string_list(data, "extensions", issues)
        for ext in extensions or []:
            if ext not in EXTENSIONS:
                issues.append(f"extensions: unknown extension {ext!r}")
        page = _check_page(data.get("page"), issues)

        plugins = None
        if data.get("plugins") is not None:
            if not isinstance(data["plugins"], list):
                issues.append("plugins must be a list")
            else:
                plugins = [_check_plugin(i, p, issues) for i, p in enumerate(data["plugins"])]

        metadata = data.get("metadata")
        if metadata is not None:
            if not isinstance(metadata, dict):
                issues.append("metadata must be a mapping")
            else:
                for key, value in metadata.items():
                    if not isinstance(key, str) or not isinstance(value, (str, int, float)):
                        issues.append(f"metadata.{key} must be a scalar value")

        disable = data.get("disableDefaultStyles", False)
        if not isinstance(disable, bool):
            issues.append("disableDefaultStyles must be true or false")

        if issues:
            raise ConfigValidationError(issues)

        return cls(
            title=title,
            authors=authors,
            description=description,
            page=page,
            styles=styles,
            files=files,
            extensions=extensions,
            plugins=plugins,
            metadata=metadata,
            disable_default_styles=disable,
            _explicit={k for k in data if data[k] is not None},
        )

    def to_dict(self) -> dict[str, Any]:
        values = {
            "title": self.title,
            "authors": self.authors,
            "description": self.description,
            "page": self.page,
            "styles": self.styles,
            "files": self.files,
            "extensions": self.extensions,
            "plugins": self.plugins,
            "metadata": self.metadata,
            "disableDefaultStyles": self.disable_default_styles,
        }
        out: dict[str, Any] = {}
        for key in FIELD_ORDER:
            value = values[key]
            if value is None:
                continue
            if key == "disableDefaultStyles" and not value and key not in self._explicit:
                continue
            out[key] = value
        return out


def load_raw(path: Path) -> dict[str, Any]:
    """Read the document as a plain mapping. A missing file is an empty document."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except UnicodeDecodeError as exc:
        raise ConfigValidationError([f"{path.name} is not valid UTF-8: {exc}"]) from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigValidationError([f"{path.name} is not valid YAML: {exc}"]) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{path.name} must contain a mapping at the top level"])
    return data


def load_document(path: Path) -> ConfigurationDocument:
    return ConfigurationDocument.from_dict(load_raw(path))


def dump_document(document: ConfigurationDocument) -> str:
    """Serialize deterministically: fixed key order, block style."""
    return yaml.safe_dump(
        document.to_dict(),
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
        width=80,
    )
