"""Source tree watcher feeding the rebuild coalescer."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from watchfiles import Change, DefaultFilter, awatch

from pagedpreview.engine.config import DEFAULT_ARTIFACT_DIRS

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0)


class SourceFilter(DefaultFilter):
    """Ignore dot entries, artifact directories and the scratch tree."""

    def __init__(
        self,
        source_dir: Path,
        *,
        artifact_dirs: Iterable[str] = DEFAULT_ARTIFACT_DIRS,
        ignore_paths: Sequence[Path] = (),
    ) -> None:
        self._source_dir = source_dir
        super().__init__(
            ignore_dirs=(*DefaultFilter.ignore_dirs, *artifact_dirs),
            ignore_paths=tuple(str(p) for p in ignore_paths),
        )

    def __call__(self, change: Change, path: str) -> bool:
        try:
            rel = Path(path).relative_to(self._source_dir)
        except ValueError:
            rel = Path(path)
        if any(part.startswith(".") for part in rel.parts):
            return False
        return super().__call__(change, path)


class SourceWatcher:
    """Watches a source tree and reports changed paths to ``on_change``.

    Errors from the underlying watch are logged and retried with backoff.
    After ``max_failures`` consecutive failures the watcher gives up and
    flags itself as degraded; the session keeps running without it.
    """

    def __init__(
        self,
        source_dir: Path,
        on_change: Callable[[set[str]], None],
        *,
        artifact_dirs: Iterable[str] = DEFAULT_ARTIFACT_DIRS,
        ignore_paths: Sequence[Path] = (),
        max_failures: int = 5,
        backoff: Sequence[float] = BACKOFF_SECONDS,
        on_degraded: Callable[[], None] | None = None,
    ) -> None:
        self.source_dir = source_dir
        self._on_change = on_change
        self._filter = SourceFilter(
            source_dir, artifact_dirs=artifact_dirs, ignore_paths=ignore_paths,
        )
        self._max_failures = max(1, max_failures)
        self._backoff = tuple(backoff) or (1.0,)
        self._on_degraded = on_degraded
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.consecutive_failures = 0
        self.degraded = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Watching %s for changes", self.source_dir)

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is None:
            return
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Watcher for %s did not stop in time; cancelling", self.source_dir)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                async for changes in awatch(
                    self.source_dir,
                    watch_filter=self._filter,
                    debounce=50,
                    stop_event=self._stop_event,
                ):
                    self.consecutive_failures = 0
                    paths = {path for _, path in changes}
                    logger.debug("Detected %d change(s) under %s", len(paths), self.source_dir)
                    self._on_change(paths)
                return
            except Exception as exc:
                self.consecutive_failures += 1
                logger.warning(
                    "Watcher error on %s (%d/%d): %s",
                    self.source_dir, self.consecutive_failures, self._max_failures, exc,
                )
                if self.consecutive_failures >= self._max_failures:
                    self.degraded = True
                    logger.error(
                        "Watcher on %s failed %d times in a row; rebuilds are now manual only",
                        self.source_dir, self.consecutive_failures,
                    )
                    if self._on_degraded is not None:
                        self._on_degraded()
                    return
                delay = self._backoff[min(self.consecutive_failures - 1, len(self._backoff) - 1)]
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
