from __future__ import annotations

from pathlib import Path

from pagedpreview.shared.render.css_imports import resolve_imports


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_local_imports_are_inlined_recursively(tmp_path: Path) -> None:
    _write(tmp_path / "partials" / "fonts.css", "body { font-family: serif; }\n")
    _write(tmp_path / "partials" / "base.css", '@import "fonts.css";\nh1 { color: red; }\n')
    main = _write(tmp_path / "main.css", '@import url("partials/base.css");\np { margin: 0; }\n')

    result = resolve_imports(main.read_text(), main)

    assert result.errors == []
    assert "font-family: serif" in result.css
    assert "h1 { color: red; }" in result.css
    assert "/* From: partials/base.css (main.css) */" in result.css
    assert "@import" not in result.css


def test_remote_imports_are_left_alone(tmp_path: Path) -> None:
    css = '@import url("https://fonts.example.com/x.css");\n'
    main = _write(tmp_path / "main.css", css)
    result = resolve_imports(css, main)
    assert result.css == css
    assert result.diagnostics == []


def test_missing_import_names_file_and_line(tmp_path: Path) -> None:
    css = "p { margin: 0; }\n\n@import 'missing.css';\n"
    main = _write(tmp_path / "main.css", css)

    strict = resolve_imports(css, main)
    assert len(strict.errors) == 1
    message = strict.errors[0]
    assert message.startswith("CSS import file not found: missing.css")
    assert "Referenced in: main.css:3" in message
    assert str(tmp_path.resolve() / "missing.css") in message

    lenient = resolve_imports(css, main, fail_on_missing=False)
    assert lenient.errors == []
    assert lenient.warnings == strict.errors
    # The unresolved statement stays in place.
    assert "@import 'missing.css';" in lenient.css


def test_circular_import_is_reported_once(tmp_path: Path) -> None:
    _write(tmp_path / "a.css", '@import "b.css";\n')
    _write(tmp_path / "b.css", '@import "a.css";\n')
    a = tmp_path / "a.css"

    result = resolve_imports(a.read_text(), a)
    assert result.errors == ["Circular import detected: a.css -> b.css -> a.css"]


def test_leading_slash_resolves_against_bundled_assets(tmp_path: Path) -> None:
    assets = tmp_path / "assets"
    _write(assets / "theme.css", ".theme { color: blue; }\n")
    main = _write(tmp_path / "book" / "main.css", '@import "/theme.css";\n')

    result = resolve_imports(main.read_text(), main, assets_dir=assets)
    assert result.errors == []
    assert ".theme { color: blue; }" in result.css
