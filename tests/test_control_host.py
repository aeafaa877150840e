from __future__ import annotations

import asyncio
import tempfile
import time
from pathlib import Path

import yaml
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase, TestServer

from pagedpreview.engine.config import PreviewConfig
from pagedpreview.engine.errors import StartupError
from pagedpreview.engine.session import SessionController
from pagedpreview.server.host import ControlHost


class _ContentServer:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.port: int | None = None
        self.running = False

    async def start(self) -> int:
        self.running = True
        self.port = 1
        return self.port

    async def stop(self) -> None:
        self.running = False

    async def notify(self, payload) -> None:
        pass


class _BrokenContentServer(_ContentServer):
    async def start(self) -> int:
        raise StartupError("content server", "exited before binding")


class TestControlHostApi(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.root = Path(self.tmpdir).resolve()
        for name in ("book-a", "book-b", ".hidden"):
            (self.root / name).mkdir()
            (self.root / name / "intro.md").write_text(f"# {name}\n", encoding="utf-8")
        (self.root / "notes.txt").write_text("not a folder", encoding="utf-8")

        self.servers: list[_ContentServer] = []

        def make_server(root: Path) -> _ContentServer:
            server = _ContentServer(root)
            self.servers.append(server)
            return server

        config = PreviewConfig(
            permitted_root=str(self.root),
            scratch_base=str(self.root / ".scratch"),
            watch=False,
            proxy_wait_seconds=0.1,
        )
        self.controller = SessionController(config, content_server_factory=make_server)
        self.host = ControlHost(self.controller, config)
        return self.host.app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.controller.start_session(self.root / "book-a")

    async def asyncTearDown(self):
        await self.controller.shutdown()
        await super().asyncTearDown()

    async def test_directory_listing_hides_dot_entries(self):
        resp = await self.client.get("/api/directories")
        assert resp.status == 200
        data = await resp.json()
        assert [d["name"] for d in data["directories"]] == ["book-a", "book-b"]
        assert data["isAtRoot"] is True
        assert data["activeFolder"] == str(self.root / "book-a")

    async def test_directory_listing_rejects_traversal(self):
        resp = await self.client.get("/api/directories", params={"path": "../../etc"})
        assert resp.status == 403
        data = await resp.json()
        assert "directories" not in data
        assert "etc" not in data["error"]

    async def test_change_folder_switches_session(self):
        resp = await self.client.post("/api/change-folder", json={"path": "book-b"})
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True and data["changed"] is True
        assert self.controller.session.source_dir == self.root / "book-b"
        assert [s.running for s in self.servers] == [False, True]

    async def test_change_folder_to_current_folder_is_noop(self):
        resp = await self.client.post("/api/change-folder", json={"path": str(self.root / "book-a")})
        data = await resp.json()
        assert resp.status == 200 and data["changed"] is False
        assert len(self.servers) == 1

    async def test_change_folder_validation_errors(self):
        resp = await self.client.post("/api/change-folder", json={})
        assert resp.status == 400
        resp = await self.client.post("/api/change-folder", json={"path": "/etc"})
        assert resp.status == 403
        resp = await self.client.post("/api/change-folder", json={"path": "missing"})
        assert resp.status == 404
        resp = await self.client.post("/api/change-folder", json={"path": "notes.txt"})
        assert resp.status == 400

    async def test_heartbeat_and_disconnect_track_clients(self):
        resp = await self.client.post("/api/heartbeat", json={"clientId": "tab-1"})
        assert (await resp.json())["clients"] == 1
        resp = await self.client.post("/api/heartbeat", json={})
        assert resp.status == 400

        resp = await self.client.post("/api/disconnect", json={"clientId": "tab-1"})
        assert (await resp.json())["clients"] == 0
        assert self.controller.shutdown_pending

        await self.client.post("/api/heartbeat", json={"clientId": "tab-1"})
        assert not self.controller.shutdown_pending

    async def test_status_reports_active_session(self):
        resp = await self.client.get("/api/status")
        data = await resp.json()
        assert data["phase"] == "active"
        assert data["session"]["sourceDir"] == str(self.root / "book-a")
        assert data["session"]["diagnostics"] == []

    async def test_config_updates_go_through_writer(self):
        resp = await self.client.put("/api/config", json={"title": "Field Guide"})
        assert resp.status == 200
        manifest = self.root / "book-a" / "manifest.yaml"
        assert yaml.safe_load(manifest.read_text(encoding="utf-8")) == {"title": "Field Guide"}

        before = manifest.read_bytes()
        resp = await self.client.put("/api/config", json={"styles": ["../escape.css"]})
        assert resp.status == 422
        assert manifest.read_bytes() == before

        resp = await self.client.get("/api/config")
        assert (await resp.json())["config"] == {"title": "Field Guide"}

    async def test_undecodable_manifest_is_rejected_as_invalid(self):
        manifest = self.root / "book-a" / "manifest.yaml"
        manifest.write_bytes(b"title: caf\xe9\n")

        resp = await self.client.put("/api/config", json={"title": "Cafe"})
        assert resp.status == 422
        assert "not valid UTF-8" in (await resp.json())["issues"][0]
        assert manifest.read_bytes() == b"title: caf\xe9\n"

    async def test_livereload_notify_is_not_exposed(self):
        resp = await self.client.post("/__livereload/notify", json={"type": "reload"})
        assert resp.status == 404

    async def test_unknown_api_route_is_json_404(self):
        resp = await self.client.get("/api/nope")
        assert resp.status == 404
        assert "error" in await resp.json()

    async def test_root_redirects_to_control_ui(self):
        resp = await self.client.get("/", allow_redirects=False)
        assert resp.status == 302
        assert resp.headers["Location"] == "/_control/"
        resp = await self.client.get("/_control/")
        assert resp.status == 200
        assert "<title>pagedpreview</title>" in await resp.text()


class TestControlHostWithoutSession(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        root = Path(self.tmpdir).resolve()
        (root / "book").mkdir()
        (root / "book" / "intro.md").write_text("# Intro\n", encoding="utf-8")
        config = PreviewConfig(
            permitted_root=str(root),
            scratch_base=str(root / ".scratch"),
            watch=False,
            proxy_wait_seconds=0.1,
        )
        self.root = root
        self.controller = SessionController(config, content_server_factory=_BrokenContentServer)
        self.host = ControlHost(self.controller, config)
        return self.host.app

    async def test_proxied_request_gets_retry_safe_503(self):
        resp = await self.client.get("/preview.html")
        assert resp.status == 503
        assert resp.headers["Retry-After"]
        assert (await resp.json())["status"] == "starting"

    async def test_failed_switch_returns_structured_error(self):
        resp = await self.client.post("/api/change-folder", json={"path": "book"})
        assert resp.status == 500
        data = await resp.json()
        assert data["success"] is False
        assert data["stage"] == "content server"

        resp = await self.client.get("/api/status")
        assert (await resp.json())["phase"] == "idle"


class _UpstreamContentServer(_ContentServer):
    """Reports a real upstream port; ``start()`` can be held open by a gate."""

    def __init__(self, root: Path, port: int, gate: asyncio.Event | None = None) -> None:
        super().__init__(root)
        self._upstream_port = port
        self._gate = gate

    async def start(self) -> int:
        if self._gate is not None:
            await self._gate.wait()
        self.running = True
        self.port = self._upstream_port
        return self.port


def _upstream(label: str) -> TestServer:
    async def page(request: web.Request) -> web.Response:
        return web.Response(text=label, content_type="text/html")

    app = web.Application()
    app.router.add_get("/preview.html", page)
    return TestServer(app)


class _SwitchingHostCase(AioHTTPTestCase):
    proxy_wait_seconds = 5.0

    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        self.root = Path(self.tmpdir).resolve()
        for name in ("book-a", "book-b"):
            (self.root / name).mkdir()
            (self.root / name / "intro.md").write_text(f"# {name}\n", encoding="utf-8")

        self.upstreams = {"book-a": _upstream("book-a"), "book-b": _upstream("book-b")}
        for upstream in self.upstreams.values():
            await upstream.start_server()
        self.gate = asyncio.Event()
        self.servers: list[_UpstreamContentServer] = []

        def make_server(root: Path) -> _UpstreamContentServer:
            label = "book-a" if not self.servers else "book-b"
            gate = self.gate if self.servers else None
            server = _UpstreamContentServer(root, self.upstreams[label].port, gate)
            self.servers.append(server)
            return server

        config = PreviewConfig(
            permitted_root=str(self.root),
            scratch_base=str(self.root / ".scratch"),
            watch=False,
            proxy_wait_seconds=self.proxy_wait_seconds,
        )
        self.controller = SessionController(config, content_server_factory=make_server)
        self.host = ControlHost(self.controller, config)
        return self.host.app

    async def asyncSetUp(self):
        await super().asyncSetUp()
        await self.controller.start_session(self.root / "book-a")

    async def asyncTearDown(self):
        self.gate.set()
        await self.controller.shutdown()
        for upstream in self.upstreams.values():
            await upstream.close()
        await super().asyncTearDown()

    async def _begin_blocked_switch(self) -> asyncio.Task:
        switch = asyncio.create_task(self.controller.switch_folder(self.root / "book-b"))
        while len(self.servers) < 2:
            await asyncio.sleep(0.01)
        return switch


class TestProxyDuringFolderSwitch(_SwitchingHostCase):
    async def test_request_waits_for_new_content_server(self):
        resp = await self.client.get("/preview.html")
        assert await resp.text() == "book-a"

        switch = await self._begin_blocked_switch()
        request = asyncio.create_task(self.client.get("/preview.html"))
        await asyncio.sleep(0.2)
        assert not request.done()

        self.gate.set()
        await switch
        resp = await request
        assert resp.status == 200
        assert await resp.text() == "book-b"


class TestProxyDuringSlowFolderSwitch(_SwitchingHostCase):
    proxy_wait_seconds = 0.3

    async def test_request_gets_bounded_503(self):
        switch = await self._begin_blocked_switch()

        started = time.monotonic()
        resp = await self.client.get("/preview.html")
        elapsed = time.monotonic() - started

        assert resp.status == 503
        assert resp.headers["Retry-After"]
        assert (await resp.json())["status"] == "starting"
        assert 0.25 <= elapsed < 3.0

        self.gate.set()
        await switch
        resp = await self.client.get("/preview.html")
        assert await resp.text() == "book-b"
