"""Handle for the content server child process.

The child is ``python -m pagedpreview.server.content_app``. It binds an
OS-assigned port and announces it with a single ``{"port": N}`` line on
stdout; that line is the readiness signal.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import aiohttp

from pagedpreview.engine.config import LIVERELOAD_PATH
from pagedpreview.engine.errors import StartupError

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 5.0


class ContentServerProcess:
    def __init__(
        self,
        root: Path,
        *,
        host: str = "127.0.0.1",
        startup_timeout: float = 15.0,
        python: str | None = None,
    ) -> None:
        self.root = root
        self.host = host
        self.port: int | None = None
        self._startup_timeout = startup_timeout
        self._python = python or sys.executable
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> int:
        """Spawn the child and wait for its port announcement."""
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self._python, "-m", "pagedpreview.server.content_app",
                "--root", str(self.root),
                "--host", self.host,
                "--port", "0",
                stdout=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise StartupError("content server", f"cannot spawn process: {exc}") from exc

        stdout = self._proc.stdout
        if stdout is None:
            await self.stop()
            raise StartupError("content server", "no stdout pipe for readiness line")
        try:
            line = await asyncio.wait_for(
                stdout.readline(), timeout=self._startup_timeout,
            )
        except asyncio.TimeoutError:
            await self.stop()
            raise StartupError(
                "content server",
                f"not ready after {self._startup_timeout:.0f}s",
            ) from None

        try:
            self.port = int(json.loads(line.decode("utf-8"))["port"])
        except (ValueError, KeyError, TypeError):
            await self.stop()
            detail = line.decode("utf-8", "replace").strip() or "process exited before binding"
            raise StartupError("content server", f"bad readiness line: {detail}") from None

        logger.info(
            "Content server pid=%s serving %s on %s:%d",
            self.pid, self.root, self.host, self.port,
        )
        return self.port

    async def notify(self, payload: dict[str, Any]) -> None:
        """Push a message to browsers on the live-reload channel. Best effort."""
        if self.port is None or not self.running:
            return
        url = f"http://{self.host}:{self.port}{LIVERELOAD_PATH}/notify"
        try:
            timeout = aiohttp.ClientTimeout(total=2.0)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if resp.status >= 400:
                        logger.debug("Live-reload notify returned HTTP %s", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("Live-reload notify failed: %s", exc)

    async def stop(self) -> None:
        """Terminate the child, escalating to kill. Safe to call twice."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Content server pid=%s ignored SIGTERM; killing", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
        logger.info("Content server pid=%s stopped (rc=%s)", proc.pid, proc.returncode)
