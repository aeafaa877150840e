"""Preview session lifecycle.

A :class:`SessionController` owns at most one live :class:`Session`: the
scratch directory, the content server child, the source watcher and the
rebuild coalescer for one source folder. Start, folder switch and
shutdown are serialized by a lock so two content servers are never alive
for the same controller.

Client presence is tracked here as well. When the last browser tab goes
away a grace timer is armed; if nobody comes back before it fires, the
controller shuts everything down and invokes the exit callback.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from pagedpreview.engine.coalescer import LoopScheduler, RebuildCoalescer, Scheduler, TimerHandle
from pagedpreview.engine.config import PreviewConfig
from pagedpreview.engine.content_server import ContentServerProcess
from pagedpreview.engine.errors import (
    ProxyUnavailable,
    RegenerationError,
    SessionSwitchError,
    StartupError,
)
from pagedpreview.engine.lifecycle import SessionPhase, validate_transition
from pagedpreview.engine.watcher import SourceWatcher
from pagedpreview.shared.services.scratch import ScratchDirectory

logger = logging.getLogger(__name__)


class ContentServer(Protocol):
    port: int | None

    async def start(self) -> int: ...
    async def stop(self) -> None: ...
    async def notify(self, payload: dict[str, Any]) -> None: ...


class Watcher(Protocol):
    degraded: bool

    def start(self) -> None: ...
    async def stop(self) -> None: ...


@dataclass
class Session:
    """One live association of a source folder with its scratch tree and processes."""

    source_dir: Path
    scratch: ScratchDirectory
    control_port: int | None = None
    content_server: ContentServer | None = None
    content_server_port: int | None = None
    watcher: Watcher | None = None
    coalescer: RebuildCoalescer | None = None
    diagnostics: list[str] = field(default_factory=list)
    last_error: str | None = None
    rebuilds: int = 0
    degraded: bool = False
    # Cleared as soon as teardown begins; results arriving later are stale.
    active: bool = True
    started_at: float = field(default_factory=time.time)

    @property
    def scratch_path(self) -> Path | None:
        return self.scratch.path


class SessionController:
    def __init__(
        self,
        config: PreviewConfig | None = None,
        *,
        content_server_factory: Callable[[Path], ContentServer] | None = None,
        watcher_factory: Callable[..., Watcher] | None = None,
        scratch_factory: Callable[[], ScratchDirectory] | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_exit: Callable[[], Any] | None = None,
    ) -> None:
        self.config = config or PreviewConfig()
        self._content_server_factory = content_server_factory or self._default_content_server
        self._watcher_factory = watcher_factory or self._default_watcher
        self._scratch_factory = scratch_factory or self._default_scratch
        self._scheduler = scheduler or LoopScheduler()
        self._clock = clock
        self._on_exit = on_exit

        self._phase = SessionPhase.IDLE
        self._session: Session | None = None
        self._lock = asyncio.Lock()
        self._ready = asyncio.Event()
        self._closed = asyncio.Event()
        self._shutdown_started = False
        # Bound once by the control host; reused by every session it hosts.
        self.control_port: int | None = None

        self._clients: dict[str, float] = {}
        self._shutdown_timer: TimerHandle | None = None
        self._shutdown_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None

    # ── Defaults ──

    def _default_content_server(self, root: Path) -> ContentServer:
        return ContentServerProcess(
            root, startup_timeout=self.config.startup_timeout_seconds,
        )

    def _default_watcher(self, source_dir: Path, on_change, *, ignore_paths, on_degraded) -> Watcher:
        return SourceWatcher(
            source_dir,
            on_change,
            artifact_dirs=self.config.artifact_dirs,
            ignore_paths=ignore_paths,
            max_failures=self.config.max_watch_failures,
            on_degraded=on_degraded,
        )

    def _default_scratch(self) -> ScratchDirectory:
        return ScratchDirectory(self.config.scratch_base_path)

    # ── Introspection ──

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def clients(self) -> set[str]:
        return set(self._clients)

    @property
    def shutdown_pending(self) -> bool:
        return self._shutdown_timer is not None

    @property
    def closed(self) -> asyncio.Event:
        return self._closed

    def _transition(self, target: SessionPhase) -> None:
        validate_transition(self._phase, target)
        logger.debug("Session phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    def status(self) -> dict[str, Any]:
        session = self._session
        payload: dict[str, Any] = {
            "phase": self._phase.value,
            "clients": len(self._clients),
            "shutdownPending": self.shutdown_pending,
            "session": None,
        }
        if session is not None:
            payload["session"] = {
                "sourceDir": str(session.source_dir),
                "scratchDir": str(session.scratch_path),
                "contentServerPort": session.content_server_port,
                "controlPort": session.control_port,
                "degraded": session.degraded,
                "diagnostics": list(session.diagnostics),
                "lastError": session.last_error,
                "rebuilds": session.rebuilds,
            }
        return payload

    # ── Lifecycle ──

    async def start_session(self, source_dir: Path | str, port: int | None = None) -> Session:
        """Provision a session for ``source_dir``. Raises StartupError."""
        async with self._lock:
            if port is not None:
                self.control_port = port
            return await self._start_locked(Path(source_dir))

    async def switch_folder(self, new_source_dir: Path | str) -> Session:
        """Tear down the current session completely, then start on a new folder.

        On failure the controller is left with no active session and
        SessionSwitchError is raised.
        """
        async with self._lock:
            if self._phase not in (SessionPhase.ACTIVE, SessionPhase.IDLE):
                raise SessionSwitchError("validate", f"controller is {self._phase.value}")
            if self._phase is SessionPhase.ACTIVE:
                self._transition(SessionPhase.SWITCHING)
                self._ready.clear()
                old = self._session
                self._session = None
                if old is not None:
                    logger.info("Switching preview from %s to %s", old.source_dir, new_source_dir)
                    try:
                        await self._teardown(old)
                    except _TeardownError as exc:
                        self._transition(SessionPhase.IDLE)
                        raise SessionSwitchError(exc.stage, str(exc.__cause__)) from exc
            try:
                return await self._start_locked(Path(new_source_dir))
            except StartupError as exc:
                raise SessionSwitchError(exc.stage, exc.reason) from exc

    async def shutdown(self) -> None:
        """Orderly shutdown. Idempotent; concurrent callers wait for the first."""
        if self._shutdown_started:
            await self._closed.wait()
            return
        self._shutdown_started = True
        self._cancel_shutdown_timer()
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None

        async with self._lock:
            self._transition(SessionPhase.STOPPING)
            self._ready.clear()
            session = self._session
            self._session = None
            if session is not None:
                logger.info("Shutting down preview of %s", session.source_dir)
                try:
                    await self._teardown(session)
                except _TeardownError:
                    logger.exception("Teardown during shutdown was incomplete")
            self._transition(SessionPhase.STOPPED)
        self._closed.set()

        if self._on_exit is not None:
            result = self._on_exit()
            if inspect.isawaitable(result):
                await result

    async def _start_locked(self, source_dir: Path) -> Session:
        self._transition(SessionPhase.STARTING)
        try:
            source = self._validate_source(source_dir)
            session = Session(source_dir=source, scratch=self._scratch_factory(), control_port=self.control_port)
        except StartupError:
            self._transition(SessionPhase.IDLE)
            raise

        try:
            await self._provision(session)
        except Exception as exc:
            session.active = False
            logger.error("Session start on %s failed: %s", source, exc)
            try:
                await self._teardown(session)
            except _TeardownError:
                logger.exception("Cleanup after failed start was incomplete")
            self._transition(SessionPhase.IDLE)
            if isinstance(exc, StartupError):
                raise
            raise StartupError("session", str(exc)) from exc

        self._session = session
        self._transition(SessionPhase.ACTIVE)
        self._ready.set()
        logger.info(
            "Preview session active source=%s scratch=%s content_port=%s",
            session.source_dir, session.scratch_path, session.content_server_port,
        )
        return session

    @staticmethod
    def _validate_source(source_dir: Path) -> Path:
        source = source_dir.expanduser().resolve()
        if not source.exists():
            raise StartupError("validate", f"source directory does not exist: {source}")
        if not source.is_dir():
            raise StartupError("validate", f"not a directory: {source}")
        if not os.access(source, os.R_OK | os.X_OK):
            raise StartupError("validate", f"source directory is not readable: {source}")
        return source

    async def _provision(self, session: Session) -> None:
        scratch = session.scratch
        scratch_path = await asyncio.to_thread(scratch.create)
        await asyncio.to_thread(scratch.populate, session.source_dir)

        try:
            result = await asyncio.to_thread(scratch.regenerate, session.source_dir)
            session.diagnostics = result.diagnostics
        except RegenerationError as exc:
            # Serve an error page rather than refusing to start.
            logger.warning("Initial regeneration failed: %s", exc)
            session.last_error = str(exc)
            result = await asyncio.to_thread(scratch.write_error_page, str(exc))
            session.diagnostics = result.diagnostics

        session.content_server = self._content_server_factory(scratch_path)
        session.content_server_port = await session.content_server.start()

        session.coalescer = RebuildCoalescer(
            lambda: self._rebuild(session),
            debounce_seconds=self.config.debounce_seconds,
            scheduler=self._scheduler,
        )
        if self.config.watch:
            session.watcher = self._watcher_factory(
                session.source_dir,
                lambda _paths: self._on_source_change(session),
                ignore_paths=[scratch_path],
                on_degraded=lambda: self._mark_degraded(session),
            )
            session.watcher.start()

    async def _teardown(self, session: Session) -> None:
        """Stop watcher, drain rebuilds, stop content server, remove scratch.

        Every step runs even if an earlier one failed; the first failure
        is re-raised as _TeardownError afterwards.
        """
        session.active = False
        first: _TeardownError | None = None

        if session.watcher is not None:
            try:
                await session.watcher.stop()
            except Exception as exc:
                logger.error("Failed to stop watcher for %s: %s", session.source_dir, exc)
                first = first or _TeardownError("stop watcher", exc)
        if session.coalescer is not None:
            await session.coalescer.drain()
        if session.content_server is not None:
            try:
                await session.content_server.stop()
            except Exception as exc:
                logger.error("Failed to stop content server: %s", exc)
                first = first or _TeardownError("stop content server", exc)
        await asyncio.to_thread(session.scratch.remove)

        if first is not None:
            raise first

    # ── Rebuilds ──

    def _on_source_change(self, session: Session) -> None:
        if session.active and session.coalescer is not None:
            session.coalescer.notify()

    def _mark_degraded(self, session: Session) -> None:
        session.degraded = True

    def request_rebuild(self) -> bool:
        """Rebuild immediately. Returns False when there is no active session."""
        session = self._session
        if session is None or session.coalescer is None:
            return False
        session.coalescer.trigger_now()
        return True

    async def _rebuild(self, session: Session) -> None:
        if not session.active:
            return
        try:
            await asyncio.to_thread(session.scratch.sync_sources, session.source_dir)
            result = await asyncio.to_thread(session.scratch.regenerate, session.source_dir)
        except RegenerationError as exc:
            if not session.active:
                logger.debug("Discarding failed rebuild for superseded session %s", session.source_dir)
                return
            session.last_error = str(exc)
            logger.error("Rebuild of %s failed: %s", session.source_dir, exc)
            if session.content_server is not None:
                await session.content_server.notify({"type": "build-error", "message": str(exc)})
            return

        if not session.active:
            logger.debug("Discarding stale rebuild result for %s", session.source_dir)
            return
        session.rebuilds += 1
        session.diagnostics = result.diagnostics
        if session.last_error is not None:
            session.last_error = None
            if session.content_server is not None:
                await session.content_server.notify({"type": "build-ok"})
        logger.info(
            "Rebuilt preview for %s (%d diagnostic(s)%s)",
            session.source_dir, len(result.diagnostics), "" if result.changed else ", unchanged",
        )

    # ── Readiness (used by the proxy) ──

    async def wait_for_content_server(self, timeout: float) -> int:
        """Port of the live content server, waiting up to ``timeout`` for one.

        Raises ProxyUnavailable when no session becomes ready in time.
        """
        if self._phase in (SessionPhase.STOPPING, SessionPhase.STOPPED):
            raise ProxyUnavailable("preview server is shutting down", retry_after=5.0)
        if not self._ready.is_set():
            if self._phase is SessionPhase.IDLE and not self._lock.locked():
                raise ProxyUnavailable("no folder is being previewed", retry_after=5.0)
            try:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                raise ProxyUnavailable("preview is starting") from None
        session = self._session
        if session is None or session.content_server_port is None:
            raise ProxyUnavailable("preview is starting")
        return session.content_server_port

    # ── Client presence ──

    def client_connected(self, client_id: str) -> bool:
        """Record a heartbeat. Returns True for a new or returning client."""
        is_new = client_id not in self._clients
        self._clients[client_id] = self._clock()
        if is_new:
            logger.info("Client connected: %s (%d total)", client_id, len(self._clients))
        if self._shutdown_timer is not None:
            logger.info("Client %s reconnected; auto-shutdown cancelled", client_id)
            self._cancel_shutdown_timer()
        return is_new

    def client_disconnected(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is None:
            return
        logger.info("Client disconnected: %s (%d remaining)", client_id, len(self._clients))
        if not self._clients:
            self._arm_shutdown_timer()

    def sweep_stale_clients(self) -> list[str]:
        """Disconnect clients that missed too many heartbeats."""
        cutoff = self._clock() - self.config.client_timeout_seconds
        stale = [cid for cid, seen in self._clients.items() if seen < cutoff]
        for cid in stale:
            logger.info("Client %s missed heartbeats", cid)
            self.client_disconnected(cid)
        return stale

    def start_client_sweeper(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = self.config.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            self.sweep_stale_clients()

    def _arm_shutdown_timer(self) -> None:
        if self._shutdown_started:
            return
        self._cancel_shutdown_timer()
        grace = self.config.shutdown_grace_seconds
        logger.info("No clients connected; shutting down in %.1fs unless one returns", grace)
        self._shutdown_timer = self._scheduler.call_later(grace, self._on_shutdown_timer)

    def _cancel_shutdown_timer(self) -> None:
        if self._shutdown_timer is not None:
            self._shutdown_timer.cancel()
            self._shutdown_timer = None

    def _on_shutdown_timer(self) -> None:
        self._shutdown_timer = None
        if self._clients:
            return
        logger.info("Grace period elapsed with no clients; shutting down")
        self._shutdown_task = asyncio.ensure_future(self.shutdown())


class _TeardownError(Exception):
    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        super().__init__(f"{stage}: {cause}")
        self.__cause__ = cause
