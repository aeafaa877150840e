"""Reverse proxy from the control host to the current content server.

Plain HTTP is streamed through. Websocket upgrades under the live-reload
prefix are relayed frame by frame; payloads are never decoded. While no
content server is ready the proxy waits a bounded time, then answers with
a retry-safe 503.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import aiohttp
from aiohttp import WSMsgType, web

from pagedpreview.engine.errors import ProxyUnavailable

logger = logging.getLogger(__name__)

HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "transfer-encoding", "upgrade", "host", "content-length",
})
WS_HANDSHAKE = frozenset({
    "sec-websocket-key", "sec-websocket-version", "sec-websocket-extensions",
    "sec-websocket-accept", "sec-websocket-protocol",
})

# Set on the request once a downstream response has been started.
_PREPARED_KEY = "proxy_prepared"

PortResolver = Callable[[float], Awaitable[int]]


def _forward_headers(headers) -> dict[str, str]:
    return {
        k: v for k, v in headers.items()
        if k.lower() not in HOP_BY_HOP and k.lower() not in WS_HANDSHAKE
    }


def unavailable_response(exc: ProxyUnavailable) -> web.Response:
    return web.json_response(
        {"status": "starting", "error": exc.reason},
        status=503,
        headers={"Retry-After": str(max(1, int(exc.retry_after)))},
    )


class ReverseProxy:
    def __init__(
        self,
        resolve_port: PortResolver,
        *,
        upstream_host: str = "127.0.0.1",
        websocket_prefix: str = "/__livereload",
        wait_seconds: float = 5.0,
        upstream_timeout: float = 30.0,
    ) -> None:
        self._resolve_port = resolve_port
        self._upstream_host = upstream_host
        self._ws_prefix = websocket_prefix
        self._wait = wait_seconds
        self._timeout = aiohttp.ClientTimeout(total=upstream_timeout, sock_connect=5.0)
        self._client: aiohttp.ClientSession | None = None

    async def on_startup(self, app: web.Application) -> None:
        self._client = aiohttp.ClientSession(timeout=self._timeout, auto_decompress=False)

    def _client_session(self) -> aiohttp.ClientSession:
        if self._client is None:
            raise RuntimeError("proxy client session is not started")
        return self._client

    async def on_cleanup(self, app: web.Application) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _url(self, port: int, request: web.Request) -> str:
        return f"http://{self._upstream_host}:{port}{request.rel_url}"

    async def handle(self, request: web.Request) -> web.StreamResponse:
        try:
            port = await self._resolve_port(self._wait)
        except ProxyUnavailable as exc:
            logger.info("Proxy %s %s unavailable: %s", request.method, request.path, exc.reason)
            return unavailable_response(exc)

        is_upgrade = request.headers.get("Upgrade", "").lower() == "websocket"
        try:
            if is_upgrade and request.path.startswith(self._ws_prefix):
                return await self._relay_websocket(request, port)
            return await self._relay_http(request, port)
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
            logger.warning("Upstream request %s %s failed: %s", request.method, request.path, exc)
            return unavailable_response(ProxyUnavailable(f"content server not reachable ({type(exc).__name__})"))
        except aiohttp.ClientResponseError as exc:
            # Rejected websocket handshake; too late to answer once relaying began.
            if request.get(_PREPARED_KEY):
                raise
            logger.warning(
                "Upstream %s %s rejected with HTTP %s", request.method, request.path, exc.status,
            )
            return unavailable_response(ProxyUnavailable(f"content server rejected request ({exc.status})"))

    async def _relay_http(self, request: web.Request, port: int) -> web.StreamResponse:
        client = self._client_session()
        body = await request.read() if request.can_read_body else None
        async with client.request(
            request.method,
            self._url(port, request),
            headers=_forward_headers(request.headers),
            data=body,
            allow_redirects=False,
        ) as upstream:
            response = web.StreamResponse(
                status=upstream.status,
                reason=upstream.reason,
                headers=_forward_headers(upstream.headers),
            )
            if upstream.content_length is not None:
                response.content_length = upstream.content_length
            await response.prepare(request)
            request[_PREPARED_KEY] = True
            async for chunk in upstream.content.iter_chunked(64 * 1024):
                await response.write(chunk)
            await response.write_eof()
            return response

    async def _relay_websocket(self, request: web.Request, port: int) -> web.StreamResponse:
        client = self._client_session()
        protocols = tuple(
            p.strip() for p in request.headers.get("Sec-WebSocket-Protocol", "").split(",") if p.strip()
        )
        async with client.ws_connect(
            self._url(port, request),
            headers=_forward_headers(request.headers),
            protocols=protocols,
            autoping=True,
        ) as upstream:
            downstream = web.WebSocketResponse(
                protocols=(upstream.protocol,) if upstream.protocol else (),
                autoping=True,
            )
            await downstream.prepare(request)
            request[_PREPARED_KEY] = True
            logger.debug("Bridging websocket %s to content port %d", request.path, port)

            pumps = [
                asyncio.create_task(self._pump(downstream, upstream)),
                asyncio.create_task(self._pump(upstream, downstream)),
            ]
            try:
                await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in pumps:
                    task.cancel()
                await asyncio.gather(*pumps, return_exceptions=True)
                if not downstream.closed:
                    await downstream.close()
            return downstream

    @staticmethod
    async def _pump(source, sink) -> None:
        async for msg in source:
            if sink.closed:
                break
            if msg.type == WSMsgType.TEXT:
                await sink.send_str(msg.data)
            elif msg.type == WSMsgType.BINARY:
                await sink.send_bytes(msg.data)
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED, WSMsgType.ERROR):
                break
