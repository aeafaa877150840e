from __future__ import annotations

from pathlib import Path

import pytest

from pagedpreview.engine.errors import BuildError, RegenerationError
from pagedpreview.shared.render.document import page_css, render_document, render_error_page
from pagedpreview.shared.render.markdown import slugify
from pagedpreview.shared.services.config_document import ConfigurationDocument


@pytest.fixture
def book(tmp_path: Path) -> Path:
    (tmp_path / "02-body.md").write_text("# Body\n\nText with ~~strike~~.\n")
    (tmp_path / "01-intro.md").write_text("# Intro\n\n| a | b |\n|---|---|\n| 1 | 2 |\n")
    (tmp_path / "style.css").write_text("h1 { color: teal; }\n")
    return tmp_path


def test_articles_follow_alphabetical_order_by_default(book: Path) -> None:
    result = render_document(book, ConfigurationDocument())
    html = result.html
    assert html.index('id="01-intro"') < html.index('id="02-body"')
    assert "<table>" in html
    assert "<s>strike</s>" in html
    assert "h1 { color: teal; }" in html
    assert '<script src="interface.js"></script>' in html
    assert result.diagnostics == []


def test_files_list_controls_order(book: Path) -> None:
    document = ConfigurationDocument(files=["02-body.md", "01-intro.md"])
    html = render_document(book, document).html
    assert html.index('id="02-body"') < html.index('id="01-intro"')


def test_output_is_deterministic(book: Path) -> None:
    document = ConfigurationDocument(title="Book", authors=["A. Writer"], metadata={"lang": "en"})
    first = render_document(book, document).html
    second = render_document(book, document).html
    assert first == second
    assert "<title>Book</title>" in first
    assert '<meta name="author" content="A. Writer">' in first


def test_build_mode_omits_preview_runtime(book: Path) -> None:
    html = render_document(book, ConfigurationDocument(), strict=True, preview_runtime=False).html
    assert "interface.js" not in html
    assert "interface.css" not in html


def test_lenient_mode_turns_missing_import_into_diagnostic(book: Path) -> None:
    (book / "style.css").write_text('@import "missing.css";\nh1 { color: teal; }\n')
    result = render_document(book, ConfigurationDocument())
    assert len(result.diagnostics) == 1
    assert "missing.css" in result.diagnostics[0]

    with pytest.raises(BuildError) as info:
        render_document(book, ConfigurationDocument(), strict=True)
    assert any("missing.css" in line for line in info.value.errors)


def test_no_markdown_is_a_regeneration_error(tmp_path: Path) -> None:
    with pytest.raises(RegenerationError):
        render_document(tmp_path, ConfigurationDocument())


def test_page_css_uses_facing_page_margins() -> None:
    document = ConfigurationDocument(
        page={"size": "A5", "margins": {"top": "20mm", "inside": "25mm", "outside": "15mm"}},
    )
    css = page_css(document)
    assert "@page { size: A5; margin-top: 20mm; }" in css
    assert "@page :left { margin-left: 15mm; margin-right: 25mm; }" in css


def test_error_page_escapes_message() -> None:
    page = render_error_page("bad <tag>")
    assert "bad &lt;tag&gt;" in page
    assert "interface.js" in page


def test_slugify() -> None:
    assert slugify("01 Intro.md") == "01-intro"
    assert slugify("!!!.md") == "section"
