"""Content server: serves one scratch directory with live reload.

Run as ``python -m pagedpreview.server.content_app --root DIR --port 0``.
Once bound it writes ``{"port": N}`` to stdout so the parent knows it is
ready. Browsers connect to ``/__livereload`` over a websocket and receive
``{"type": "reload"}`` whenever a served file changes, plus whatever the
parent posts to ``/__livereload/notify``.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from aiohttp import WSMsgType, web
from watchfiles import awatch

from pagedpreview.engine.config import LIVERELOAD_PATH
from pagedpreview.engine.errors import PathSecurityError
from pagedpreview.shared.services.path_security import resolve_within_root
from pagedpreview.shared.services.scratch import ENTRY_DOCUMENT

logger = logging.getLogger(__name__)

RELOAD_SUFFIXES = (".html", ".css", ".js")


class ContentApp:
    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self._sockets: set[web.WebSocketResponse] = set()
        self._stop_event = asyncio.Event()
        self._watch_task: asyncio.Task | None = None
        self.app = web.Application()
        self.app.router.add_get(LIVERELOAD_PATH, self._handle_livereload)
        self.app.router.add_post(f"{LIVERELOAD_PATH}/notify", self._handle_notify)
        self.app.router.add_get("/{tail:.*}", self._handle_file)
        self.app.on_startup.append(self._on_startup)
        self.app.on_shutdown.append(self._on_shutdown)

    async def _on_startup(self, app: web.Application) -> None:
        self._watch_task = asyncio.create_task(self._watch_loop())

    async def _on_shutdown(self, app: web.Application) -> None:
        self._stop_event.set()
        for ws in list(self._sockets):
            await ws.close()
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

    async def broadcast(self, payload: dict) -> int:
        text = json.dumps(payload)
        sent = 0
        for ws in list(self._sockets):
            if ws.closed:
                self._sockets.discard(ws)
                continue
            try:
                await ws.send_str(text)
                sent += 1
            except ConnectionResetError:
                self._sockets.discard(ws)
        return sent

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(self.root, stop_event=self._stop_event, debounce=50):
                paths = [p for _, p in changes if p.endswith(RELOAD_SUFFIXES)]
                if paths:
                    logger.debug("Served files changed: %s", ", ".join(sorted(paths)))
                    await self.broadcast({"type": "reload"})
        except Exception:
            logger.exception("Content watch loop stopped")

    async def _handle_livereload(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        self._sockets.add(ws)
        await ws.send_str(json.dumps({"type": "connected"}))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    break
        finally:
            self._sockets.discard(ws)
        return ws

    async def _handle_notify(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return web.json_response({"error": "Body must be JSON"}, status=400)
        if not isinstance(payload, dict) or "type" not in payload:
            return web.json_response({"error": "Missing message type"}, status=400)
        sent = await self.broadcast(payload)
        return web.json_response({"delivered": sent})

    async def _handle_file(self, request: web.Request) -> web.StreamResponse:
        tail = request.match_info["tail"] or ENTRY_DOCUMENT
        try:
            path = resolve_within_root(tail, self.root)
        except PathSecurityError as exc:
            return web.json_response({"error": exc.client_message}, status=403)
        if path.is_dir():
            path = path / "index.html"
        if not path.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(path, headers={"Cache-Control": "no-cache"})


async def serve(root: Path, host: str, port: int) -> None:
    content = ContentApp(root)
    runner = web.AppRunner(content.app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
    actual_port = sockets[0].getsockname()[1] if sockets else port
    sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
    sys.stdout.flush()
    logger.info("Content server listening on %s:%d root=%s", host, actual_port, root)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    try:
        await stop.wait()
    finally:
        await runner.cleanup()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="pagedpreview-content")
    parser.add_argument("--root", required=True, help="Directory to serve")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, os.getenv("PAGEDPREVIEW_LOG_LEVEL", "INFO").upper(), logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s",
    )
    asyncio.run(serve(Path(args.root), args.host, args.port))


if __name__ == "__main__":
    main()
