"""
Proxy bridge to the ttyd terminal daemon.

Everything under the reserved prefix (``/ttyd`` by default) is forwarded
to a fixed loopback backend with the prefix stripped:

    browser --> gateway /ttyd/<path>?token=...  --> 127.0.0.1:7681/<path>

Plain HTTP requests and WebSocket upgrades share one aiohttp client
session and one gate function (check_grant). A request without a valid
proxy-class token never reaches the backend.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import urlsplit

import aiohttp
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from userland_panel.auth import CredentialGate, TokenKind, TokenRecord
from userland_panel.errors import AuthError

logger = logging.getLogger(__name__)

# Headers to strip when proxying
HOP_BY_HOP = frozenset({
    "connection", "keep-alive", "transfer-encoding", "te", "trailers",
    "upgrade", "proxy-authorization", "proxy-authenticate",
    "proxy-connection",
})

# WebSocket handshake headers the client library regenerates itself
WS_HANDSHAKE = frozenset({
    "sec-websocket-key", "sec-websocket-version", "sec-websocket-extensions",
    "sec-websocket-protocol", "host",
})


def client_ip(scope_client, headers) -> str:
    """Best-effort client address, honouring X-Forwarded-For."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return scope_client.host if scope_client else "unknown"


class ProxyBridge:
    """Token-gated reverse proxy for one backend."""

    def __init__(self, gate: CredentialGate, backend_url: str = "http://127.0.0.1:7681",
                 prefix: str = "/ttyd"):
        self._gate = gate
        self.backend_url = backend_url.rstrip("/")
        self.prefix = "/" + prefix.strip("/")
        self._backend_netloc = urlsplit(self.backend_url).netloc
        self._client_session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    # Shared pieces
    # ------------------------------------------------------------------

    async def get_client_session(self) -> aiohttp.ClientSession:
        """Get or create the shared backend client session."""
        if self._client_session is None or self._client_session.closed:
            self._client_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=10, sock_read=300),
                # Bodies are relayed byte-for-byte, encoding included
                auto_decompress=False,
            )
        return self._client_session

    async def close(self) -> None:
        if self._client_session is not None and not self._client_session.closed:
            await self._client_session.close()
        self._client_session = None

    def check_grant(self, token: Optional[str]) -> TokenRecord:
        """The single gate for both HTTP and WebSocket traffic."""
        return self._gate.authenticate(token, TokenKind.PROXY)

    def upstream_path(self, path: str, query: str = "") -> str:
        """Strip the reserved prefix and keep the query string."""
        if path.startswith(self.prefix):
            path = path[len(self.prefix):]
        if not path.startswith("/"):
            path = "/" + path
        return f"{path}?{query}" if query else path

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def forward_http(self, request: Request) -> Response:
        """Proxy an HTTP request to the backend."""
        try:
            self.check_grant(request.query_params.get("token"))
        except AuthError as e:
            return PlainTextResponse(e.message, status_code=e.status_code)

        target_url = self.backend_url + self.upstream_path(request.url.path, request.url.query)

        # Build upstream headers (strip hop-by-hop)
        headers = {}
        for key, value in request.headers.items():
            if key.lower() not in HOP_BY_HOP and key.lower() != "host":
                headers[key] = value
        remote = client_ip(request.client, request.headers)
        headers["Host"] = self._backend_netloc
        headers["X-Forwarded-For"] = remote
        headers["X-Forwarded-Proto"] = request.url.scheme
        headers["X-Real-IP"] = remote

        body = await request.body()
        session = await self.get_client_session()
        try:
            upstream_resp = await session.request(
                method=request.method,
                url=target_url,
                headers=headers,
                data=body or None,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Proxy error for {request.method} {request.url.path}: {e}")
            return PlainTextResponse("Bad Gateway", status_code=502)

        async def relay_body():
            try:
                async for chunk in upstream_resp.content.iter_any():
                    yield chunk
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Upstream body interrupted for {request.url.path}: {e}")
            finally:
                upstream_resp.release()

        response = StreamingResponse(relay_body(), status_code=upstream_resp.status)
        for key, value in upstream_resp.headers.items():
            if key.lower() not in HOP_BY_HOP and key.lower() != "content-length":
                response.headers.append(key, value)
        return response

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    async def forward_websocket(self, websocket: WebSocket) -> None:
        """
        Proxy a WebSocket connection to the backend.

        The client is only accepted once the backend connection is up, so
        a bad token or an unreachable backend drops the client without
        completing its handshake. Text and binary frames are relayed in
        both directions (ttyd uses binary frames for terminal I/O).

        ASGI has no way to drop the raw socket of a pending upgrade: a
        close before accept() is answered by the server (uvicorn sends an
        HTTP 403) instead of the connection just going away.
        """
        try:
            self.check_grant(websocket.query_params.get("token"))
        except AuthError as e:
            logger.warning(f"Rejected proxy upgrade for {websocket.url.path}: {e.message}")
            await websocket.close(code=1008)
            return

        protocols = [
            p.strip()
            for p in websocket.headers.get("sec-websocket-protocol", "").split(",")
            if p.strip()
        ]
        target_url = self.backend_url + self.upstream_path(websocket.url.path, websocket.url.query)
        ws_url = target_url.replace("http://", "ws://", 1).replace("https://", "wss://", 1)

        upstream_headers = {}
        for key, value in websocket.headers.items():
            if key.lower() not in HOP_BY_HOP and key.lower() not in WS_HANDSHAKE:
                upstream_headers[key] = value

        session = await self.get_client_session()
        try:
            ws_upstream = await session.ws_connect(
                ws_url,
                protocols=protocols,
                headers=upstream_headers,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"WebSocket proxy connection error: {e}")
            await websocket.close(code=1011)
            return

        try:
            await websocket.accept(subprotocol=ws_upstream.protocol)
            await self._relay(websocket, ws_upstream)
        finally:
            await ws_upstream.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except RuntimeError:
                    pass

    async def _relay(self, websocket: WebSocket, ws_upstream: aiohttp.ClientWebSocketResponse) -> None:
        async def forward_to_upstream():
            """Forward messages from client to upstream."""
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
                    if message.get("bytes") is not None:
                        await ws_upstream.send_bytes(message["bytes"])
                    elif message.get("text") is not None:
                        await ws_upstream.send_str(message["text"])
            except (WebSocketDisconnect, aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.debug(f"WS forward to upstream ended: {e}")

        async def forward_to_client():
            """Forward messages from upstream to client."""
            try:
                async for msg in ws_upstream:
                    if msg.type == aiohttp.WSMsgType.BINARY:
                        await websocket.send_bytes(msg.data)
                    elif msg.type == aiohttp.WSMsgType.TEXT:
                        await websocket.send_text(msg.data)
                    elif msg.type in (aiohttp.WSMsgType.CLOSE,
                                      aiohttp.WSMsgType.CLOSING,
                                      aiohttp.WSMsgType.CLOSED,
                                      aiohttp.WSMsgType.ERROR):
                        break
            except (WebSocketDisconnect, ConnectionError, RuntimeError) as e:
                logger.debug(f"WS forward to client ended: {e}")

        # Either side closing ends the bridge
        tasks = [
            asyncio.create_task(forward_to_upstream()),
            asyncio.create_task(forward_to_client()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
