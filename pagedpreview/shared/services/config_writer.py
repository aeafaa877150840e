"""Serialized, atomic writer for the project configuration document.

Every mutation of a given ``manifest.yaml`` goes through one
:class:`ConfigWriter`. Updates are queued on a single worker task and
applied strictly in arrival order. Each update rewrites the whole file
through a uniquely named temp file followed by an atomic rename, so
readers never observe a partially written document.
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from pagedpreview.engine.errors import ConfigValidationError, WriteFailure
from pagedpreview.shared.services.config_document import (
    ConfigurationDocument,
    dump_document,
    load_raw,
)
from pagedpreview.shared.services.durable_write import (
    commit,
    unique_temp_path,
    write_synced,
)

logger = logging.getLogger(__name__)

_writers: dict[Path, ConfigWriter] = {}


def _write_text(path: Path, content: str) -> None:
    write_synced(path, content)


def get_writer(path: Path | str) -> ConfigWriter:
    """Return the writer for ``path``, creating it on first use."""
    key = Path(path).expanduser().resolve()
    writer = _writers.get(key)
    if writer is None:
        writer = ConfigWriter(key)
        _writers[key] = writer
    return writer


class ConfigWriter:
    """Single-worker FIFO queue of configuration updates for one file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._queue: asyncio.Queue[tuple[dict[str, Any], asyncio.Future]] | None = None
        self._worker: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into the document and persist it.

        Returns the committed document as a mapping. Raises
        ConfigValidationError (nothing written) or WriteFailure.
        """
        loop = asyncio.get_running_loop()
        queue = self._ensure_worker(loop)
        future: asyncio.Future = loop.create_future()
        await queue.put((dict(changes), future))
        return await future

    async def read(self) -> dict[str, Any]:
        """Current committed document, validated."""
        raw = await asyncio.to_thread(load_raw, self.path)
        return ConfigurationDocument.from_dict(raw).to_dict()

    async def close(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue:
        queue = self._queue
        if self._loop is not loop or queue is None:
            # Queue and worker are bound to the loop that created them.
            self._loop = loop
            queue = self._queue = asyncio.Queue()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run(queue))
        return queue

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            changes, future = await queue.get()
            try:
                result = await asyncio.to_thread(self._apply, changes)
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    def _apply(self, changes: dict[str, Any]) -> dict[str, Any]:
        current = load_raw(self.path)
        merged = {**current, **changes}
        # Explicit None removes a key.
        merged = {k: v for k, v in merged.items() if v is not None}
        try:
            document = ConfigurationDocument.from_dict(merged)
        except ConfigValidationError:
            logger.warning("Rejected configuration update for %s: %s", self.path, sorted(changes))
            raise
        content = dump_document(document)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = unique_temp_path(self.path)
        try:
            _write_text(tmp_path, content)
            commit(tmp_path, self.path)
        except OSError as exc:
            failed_path = self._preserve_failed(tmp_path)
            logger.error(
                "Configuration write failed for %s: %s (preserved=%s)",
                self.path, exc, failed_path,
            )
            raise WriteFailure(str(self.path), failed_path, str(exc)) from exc

        logger.info("Committed configuration %s (keys=%s)", self.path, ", ".join(sorted(changes)))
        return document.to_dict()

    @staticmethod
    def _preserve_failed(tmp_path: Path) -> str | None:
        if not tmp_path.exists():
            return None
        failed_path = tmp_path.with_name(tmp_path.name + ".failed")
        try:
            os.replace(tmp_path, failed_path)
        except OSError:
            logger.warning("Could not preserve failed temp file %s", tmp_path, exc_info=True)
            return str(tmp_path)
        return str(failed_path)
