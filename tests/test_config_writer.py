from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from pagedpreview.engine.errors import ConfigValidationError, WriteFailure
from pagedpreview.shared.services.config_document import ConfigurationDocument
from pagedpreview.shared.services.config_writer import ConfigWriter, get_writer


def _temp_leftovers(directory: Path) -> list[str]:
    return sorted(
        p.name for p in directory.iterdir()
        if ".tmp." in p.name and not p.name.endswith(".failed")
    )


@pytest.mark.asyncio
async def test_concurrent_updates_apply_in_arrival_order(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    writer = ConfigWriter(path)

    results = await asyncio.gather(
        writer.update({"title": "1"}),
        writer.update({"title": "2"}),
        writer.update({"title": "3"}),
    )

    assert [r["title"] for r in results] == ["1", "2", "3"]
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data == {"title": "3"}
    ConfigurationDocument.from_dict(data)
    assert _temp_leftovers(tmp_path) == []
    await writer.close()


@pytest.mark.asyncio
async def test_update_merges_into_existing_document(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    path.write_text("title: Book\nauthors:\n  - Ada\n", encoding="utf-8")
    writer = ConfigWriter(path)

    await writer.update({"styles": ["theme.css"]})

    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data == {"title": "Book", "authors": ["Ada"], "styles": ["theme.css"]}
    await writer.close()


@pytest.mark.asyncio
async def test_invalid_update_leaves_file_byte_identical(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    writer = ConfigWriter(path)
    await writer.update({"title": "Original"})
    before = path.read_bytes()

    with pytest.raises(ConfigValidationError) as excinfo:
        await writer.update({"styles": ["../outside.css"]})

    assert "styles[0]" in str(excinfo.value)
    assert path.read_bytes() == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["manifest.yaml"]
    await writer.close()


@pytest.mark.asyncio
async def test_write_failure_preserves_failed_temp_file(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    writer = ConfigWriter(path)
    await writer.update({"title": "Committed"})
    before = path.read_bytes()

    def failing_write(target: Path, content: str) -> None:
        target.write_text(content[:4], encoding="utf-8")
        raise OSError("No space left on device")

    with patch(
        "pagedpreview.shared.services.config_writer._write_text",
        side_effect=failing_write,
    ):
        with pytest.raises(WriteFailure) as excinfo:
            await writer.update({"title": "Lost"})

    failed_path = excinfo.value.failed_path
    assert failed_path is not None and failed_path.endswith(".failed")
    assert failed_path in str(excinfo.value)
    assert Path(failed_path).exists()
    assert _temp_leftovers(tmp_path) == []
    assert path.read_bytes() == before
    await writer.close()


@pytest.mark.asyncio
async def test_failed_update_does_not_block_queued_updates(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    writer = ConfigWriter(path)

    results = await asyncio.gather(
        writer.update({"title": "first"}),
        writer.update({"priority": 3}),
        writer.update({"title": "last"}),
        return_exceptions=True,
    )

    assert results[0]["title"] == "first"
    assert isinstance(results[1], ConfigValidationError)
    assert results[2]["title"] == "last"
    assert yaml.safe_load(path.read_text(encoding="utf-8")) == {"title": "last"}
    await writer.close()


def test_get_writer_returns_one_instance_per_path(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"
    assert get_writer(path) is get_writer(str(path))
    assert get_writer(path) is not get_writer(tmp_path / "other.yaml")
