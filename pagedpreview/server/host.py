"""Control host: the single externally visible HTTP endpoint.

Routes:
    /api/*              JSON control API, handled here
    /_control/          control UI
    /__livereload       websocket bridged to the content server
    everything else     proxied to the content server
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from pathlib import Path

from aiohttp import web

from pagedpreview.engine.config import (
    API_PREFIX,
    CONFIG_FILENAME,
    CONTROL_UI_PATH,
    LIVERELOAD_PATH,
    PreviewConfig,
)
from pagedpreview.engine.errors import (
    ConfigValidationError,
    PathSecurityError,
    SessionSwitchError,
    StartupError,
    WriteFailure,
)
from pagedpreview.engine.session import SessionController
from pagedpreview.server.proxy import ReverseProxy
from pagedpreview.shared.render.css_imports import ASSETS_DIR
from pagedpreview.shared.services.config_writer import get_writer
from pagedpreview.shared.services.path_security import list_directories, resolve_within_root

logger = logging.getLogger(__name__)

SHUTDOWN_DELAY_SECONDS = 0.5


class ControlHost:
    def __init__(self, controller: SessionController, config: PreviewConfig | None = None) -> None:
        self._controller = controller
        self._config = config or controller.config
        self._host = self._config.host
        self._port = self._config.port
        self._root = self._config.root_path
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()
        self._proxy = ReverseProxy(
            controller.wait_for_content_server,
            websocket_prefix=LIVERELOAD_PATH,
            wait_seconds=self._config.proxy_wait_seconds,
            upstream_timeout=self._config.upstream_timeout_seconds,
        )
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._proxy.on_startup)
        self._app.on_cleanup.append(self._proxy.on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/"

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            log = logger.info if request.path.startswith(API_PREFIX) else logger.debug
            log(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get(f"{API_PREFIX}/health", self._handle_health)
        r.add_get(f"{API_PREFIX}/status", self._handle_status)
        r.add_get(f"{API_PREFIX}/directories", self._handle_directories)
        r.add_post(f"{API_PREFIX}/change-folder", self._handle_change_folder)
        r.add_post(f"{API_PREFIX}/heartbeat", self._handle_heartbeat)
        r.add_post(f"{API_PREFIX}/disconnect", self._handle_disconnect)
        r.add_post(f"{API_PREFIX}/shutdown", self._handle_shutdown)
        r.add_post(f"{API_PREFIX}/rebuild", self._handle_rebuild)
        r.add_get(f"{API_PREFIX}/config", self._handle_get_config)
        r.add_put(f"{API_PREFIX}/config", self._handle_put_config)
        r.add_route("*", API_PREFIX + "/{tail:.*}", self._handle_api_not_found)
        r.add_get("/", self._handle_root)
        r.add_get(CONTROL_UI_PATH, self._handle_control_ui)
        # Internal to the controller; never reachable from outside.
        r.add_route("*", f"{LIVERELOAD_PATH}/notify", self._handle_api_not_found)
        r.add_route("*", "/{tail:.*}", self._proxy.handle)

    # ── Helpers ──

    @staticmethod
    async def _json_body(request: web.Request) -> dict:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(
                text=json.dumps({"success": False, "error": "Request body must be JSON"}),
                content_type="application/json",
            )
        return body if isinstance(body, dict) else {}

    def _config_path(self) -> Path | None:
        session = self._controller.session
        if session is None:
            return None
        return session.source_dir / CONFIG_FILENAME

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._controller.status())

    async def _handle_root(self, request: web.Request) -> web.Response:
        raise web.HTTPFound(CONTROL_UI_PATH)

    async def _handle_control_ui(self, request: web.Request) -> web.StreamResponse:
        return web.FileResponse(ASSETS_DIR / "control.html", headers={"Cache-Control": "no-cache"})

    async def _handle_api_not_found(self, request: web.Request) -> web.Response:
        return web.json_response({"error": f"Not found: {request.path}"}, status=404)

    async def _handle_directories(self, request: web.Request) -> web.Response:
        requested = request.query.get("path")
        try:
            listing = await asyncio.to_thread(list_directories, requested, self._root)
        except PathSecurityError as exc:
            logger.warning("Rejected directory listing: %s", exc)
            return web.json_response({"error": exc.client_message}, status=403)
        except FileNotFoundError:
            return web.json_response({"error": "Directory not found"}, status=404)
        except NotADirectoryError:
            return web.json_response({"error": "Not a directory"}, status=400)
        except PermissionError:
            return web.json_response({"error": "Permission denied"}, status=403)
        session = self._controller.session
        listing["activeFolder"] = str(session.source_dir) if session else None
        return web.json_response(listing)

    async def _handle_change_folder(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        raw = body.get("path")
        if not isinstance(raw, str) or not raw.strip():
            return web.json_response(
                {"success": False, "error": "Request body must include a folder path"}, status=400,
            )
        try:
            target = resolve_within_root(raw, self._root)
        except PathSecurityError as exc:
            logger.warning("Rejected folder change: %s", exc)
            return web.json_response({"success": False, "error": exc.client_message}, status=403)
        if not target.exists():
            return web.json_response({"success": False, "error": "Folder not found"}, status=404)
        if not target.is_dir():
            return web.json_response({"success": False, "error": "Path is not a folder"}, status=400)

        session = self._controller.session
        if session is not None and session.source_dir == target:
            return web.json_response({"success": True, "path": str(target), "changed": False})

        try:
            await self._controller.switch_folder(target)
        except SessionSwitchError as exc:
            logger.error("Folder change to %s failed: %s", target, exc)
            return web.json_response(
                {"success": False, "error": exc.reason, "stage": exc.stage}, status=500,
            )
        return web.json_response({"success": True, "path": str(target), "changed": True})

    async def _handle_heartbeat(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        client_id = body.get("clientId")
        if not isinstance(client_id, str) or not client_id:
            return web.json_response({"success": False, "error": "clientId is required"}, status=400)
        self._controller.client_connected(client_id)
        return web.json_response({"success": True, "clients": len(self._controller.clients)})

    async def _handle_disconnect(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        client_id = body.get("clientId")
        if not isinstance(client_id, str) or not client_id:
            return web.json_response({"success": False, "error": "clientId is required"}, status=400)
        self._controller.client_disconnected(client_id)
        return web.json_response({"success": True, "clients": len(self._controller.clients)})

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        logger.info("Shutdown requested via API")
        # Respond first; the browser should see the acknowledgement.
        asyncio.get_running_loop().call_later(
            SHUTDOWN_DELAY_SECONDS, lambda: asyncio.ensure_future(self._controller.shutdown()),
        )
        return web.json_response({"success": True, "message": "Shutting down"})

    async def _handle_rebuild(self, request: web.Request) -> web.Response:
        if not self._controller.request_rebuild():
            return web.json_response({"success": False, "error": "No active preview session"}, status=409)
        return web.json_response({"success": True})

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        path = self._config_path()
        if path is None:
            return web.json_response({"error": "No active preview session"}, status=409)
        try:
            document = await get_writer(path).read()
        except ConfigValidationError as exc:
            return web.json_response({"error": str(exc), "issues": exc.issues}, status=422)
        return web.json_response({"path": str(path), "config": document})

    async def _handle_put_config(self, request: web.Request) -> web.Response:
        path = self._config_path()
        if path is None:
            return web.json_response({"error": "No active preview session"}, status=409)
        body = await self._json_body(request)
        changes = body.get("changes", body)
        if not isinstance(changes, dict) or not changes:
            return web.json_response({"error": "No configuration changes supplied"}, status=400)
        try:
            document = await get_writer(path).update(changes)
        except ConfigValidationError as exc:
            return web.json_response({"error": str(exc), "issues": exc.issues}, status=422)
        except WriteFailure as exc:
            return web.json_response(
                {"error": str(exc), "failedPath": exc.failed_path}, status=500,
            )
        return web.json_response({"path": str(path), "config": document})

    # ── Serving ──

    async def start(self, source_dir: Path) -> None:
        """Start the session, then bind and accept traffic.

        Raises StartupError when either step fails; a started session is
        torn down again if the port cannot be bound.
        """
        runner = web.AppRunner(self._app)
        await runner.setup()
        self._runner = runner
        try:
            await self._controller.start_session(source_dir, self._port)
        except StartupError:
            await runner.cleanup()
            self._runner = None
            raise

        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError as exc:
            await self._controller.shutdown()
            await runner.cleanup()
            raise StartupError("bind", f"cannot listen on {self._host}:{self._port}: {exc}") from exc

        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self._port = actual_port
        self._controller.control_port = self._port
        session = self._controller.session
        if session is not None:
            session.control_port = self._port
        self._controller.start_client_sweeper()
        logger.info("Control host listening on %s", self.url)

    async def serve_forever(self) -> None:
        try:
            await self._controller.closed.wait()
        except asyncio.CancelledError:
            logger.info("Control host cancelled; shutting down")
            await self._controller.shutdown()
        finally:
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

