from __future__ import annotations

import json
from pathlib import Path

import pytest
from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from pagedpreview.server.content_app import ContentApp


@pytest.fixture
def scratch(tmp_path: Path) -> Path:
    (tmp_path / "preview.html").write_text("<html>book</html>")
    (tmp_path / "interface.js").write_text("// runtime")
    return tmp_path


@pytest.mark.asyncio
async def test_serves_entry_document_and_files(scratch: Path) -> None:
    client = TestClient(TestServer(ContentApp(scratch).app))
    await client.start_server()
    try:
        resp = await client.get("/")
        assert resp.status == 200
        assert await resp.text() == "<html>book</html>"
        assert resp.headers["Cache-Control"] == "no-cache"

        resp = await client.get("/interface.js")
        assert await resp.text() == "// runtime"

        resp = await client.get("/missing.css")
        assert resp.status == 404
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_notify_is_broadcast_to_livereload_clients(scratch: Path) -> None:
    client = TestClient(TestServer(ContentApp(scratch).app))
    await client.start_server()
    try:
        ws = await client.ws_connect("/__livereload")
        hello = await ws.receive(timeout=5)
        assert json.loads(hello.data) == {"type": "connected"}

        resp = await client.post(
            "/__livereload/notify", json={"type": "build-error", "message": "boom"},
        )
        assert await resp.json() == {"delivered": 1}

        msg = await ws.receive(timeout=5)
        assert msg.type == WSMsgType.TEXT
        assert json.loads(msg.data) == {"type": "build-error", "message": "boom"}
        await ws.close()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_notify_rejects_untyped_payload(scratch: Path) -> None:
    client = TestClient(TestServer(ContentApp(scratch).app))
    await client.start_server()
    try:
        resp = await client.post("/__livereload/notify", json={"message": "no type"})
        assert resp.status == 400
    finally:
        await client.close()
