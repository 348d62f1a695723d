#!/usr/bin/env python3
"""
UserLAnd Panel Server

Remote-access gateway for a UserLAnd / Termux userland. A browser logs in
with the same credentials it would use over SSH, then gets:

  - interactive shells over the /ws WebSocket
  - live system metrics pushed over the same socket
  - the ttyd terminal daemon, reverse-proxied under /ttyd
  - create/list/delete of proot sandboxes
"""

import argparse
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from userland_panel.auth import CredentialGate, RateLimiter, TokenKind, TokenStore, parse_bearer
from userland_panel.config import GatewayConfig, load_config
from userland_panel.connection import ClientConnection
from userland_panel.distros import ProotDistroController
from userland_panel.errors import AuthError, GatewayError, InternalError, UpstreamError, ValidationError
from userland_panel.metrics import SystemCollector
from userland_panel.proxy import ProxyBridge, client_ip
from userland_panel.terminals import TerminalRegistry

logger = logging.getLogger(__name__)

# Paths under /api that never require authentication
_AUTH_EXEMPT = {"/api/auth/login", "/api/auth/logout", "/api/health"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}
DEFAULT_CSP = "default-src 'self' 'unsafe-inline'"
# ttyd loads its own assets and opens ws: connections; it may also be framed
PROXY_CSP = "default-src 'self' 'unsafe-inline' data: blob: ws: wss: http: https:"


# =============================================================================
# BACKGROUND TASKS
# =============================================================================


async def sweep_expired_tokens(tokens: TokenStore, interval: float):
    """Periodically drop tokens whose TTL has lapsed."""
    while True:
        await asyncio.sleep(interval)
        try:
            count = tokens.sweep()
            if count > 0:
                logger.info(f"Expired {count} token(s)")
        except Exception as e:
            logger.error(f"Token sweep error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    state = app.state
    sweep_task = asyncio.create_task(
        sweep_expired_tokens(state.tokens, state.config.token_sweep_interval)
    )
    logger.info("UserLAnd Panel server started")

    yield

    # Shutdown
    state.terminals.kill_all()
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    await state.proxy.close()
    logger.info("UserLAnd Panel server stopped")


# =============================================================================
# HELPERS
# =============================================================================


def get_current_user(request: Request) -> str:
    """Username attached by the auth middleware."""
    return request.state.username


async def read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def collect(request: Request, section: str):
    """Call one collector method, mapping failures to 500."""
    collector = request.app.state.collector
    try:
        return await getattr(collector, section)()
    except Exception as e:
        logger.error(f"API Error /api/system/{section}: {e}")
        raise UpstreamError(str(e) or "System collector failed", status_code=500)


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.post("/api/auth/login")
async def login(request: Request):
    """Validate credentials against the local sshd and issue a session token."""
    body = await read_json(request)
    username = str(body.get("username") or "").strip()
    password = body.get("password") or ""
    if not isinstance(password, str):
        raise ValidationError("Username and password required")

    gate: CredentialGate = request.app.state.gate
    token = await gate.login(username, password, client_ip(request.client, request.headers))
    return {"token": token, "username": username, "message": "Login successful"}


@router.post("/api/auth/logout")
async def logout(request: Request):
    """Revoke the bearer token, if any. Always succeeds."""
    request.app.state.gate.logout(parse_bearer(request.headers.get("authorization")))
    return {"message": "Logout successful"}


@router.get("/api/health")
async def health():
    return {"status": "ok", "timestamp": int(time.time() * 1000)}


@router.get("/api/system/all")
async def system_all(request: Request):
    return await collect(request, "snapshot")


@router.get("/api/system/cpu")
async def system_cpu(request: Request):
    return {"cpu": await collect(request, "cpu")}


@router.get("/api/system/memory")
async def system_memory(request: Request):
    return await collect(request, "memory")


@router.get("/api/system/processes")
async def system_processes(request: Request):
    return await collect(request, "processes")


@router.get("/api/system/ports")
async def system_ports(request: Request):
    return await collect(request, "ports")


@router.get("/api/system/device")
async def system_device(request: Request):
    return await collect(request, "device")


@router.get("/api/system/battery")
async def system_battery(request: Request):
    return await collect(request, "battery")


@router.get("/api/system/temperatures")
async def system_temperatures(request: Request):
    return await collect(request, "temperatures")


@router.get("/api/terminal/url")
async def terminal_url(request: Request):
    """Mint a proxy token and return the ttyd URL that embeds it."""
    token = request.app.state.gate.issue_proxy_token(get_current_user(request))
    base_url = str(request.base_url).rstrip("/")
    prefix = request.app.state.proxy.prefix
    return {"url": f"{base_url}{prefix}?token={token}"}


@router.post("/api/proot/create")
async def proot_create(request: Request):
    body = await read_json(request)
    if not body.get("name") or body.get("port") in (None, ""):
        raise ValidationError("Name and port required")
    record = await request.app.state.distros.create(body["name"], body["port"])
    return record.to_dict()


@router.delete("/api/proot/delete/{name}")
async def proot_delete(request: Request, name: str):
    await request.app.state.distros.delete(name)
    return {"message": f"Distro '{name}' deleted", "name": name}


@router.get("/api/proot/list")
async def proot_list(request: Request):
    return [record.to_dict() for record in await request.app.state.distros.list()]


@router.websocket("/ws")
async def dashboard_socket(websocket: WebSocket):
    """Terminal and metrics channel. The token is checked once, at connect."""
    state = websocket.app.state
    await websocket.accept()
    try:
        record = state.gate.authenticate(websocket.query_params.get("token"), TokenKind.SESSION)
    except AuthError:
        await websocket.close(code=1008, reason="Unauthorized")
        return

    connection = ClientConnection(
        websocket,
        record.username,
        state.terminals,
        state.collector.snapshot,
        metrics_interval=state.config.metrics_interval,
    )
    await connection.run()


# =============================================================================
# APPLICATION
# =============================================================================


def create_app(config: Optional[GatewayConfig] = None,
               gate: Optional[CredentialGate] = None,
               collector=None,
               distros=None) -> FastAPI:
    """Wire the gateway. Components can be injected (tests pass fakes)."""
    config = config or load_config()

    tokens = gate.tokens if gate is not None else TokenStore(
        session_ttl=config.session_token_ttl,
        proxy_ttl=config.proxy_token_ttl,
    )
    if gate is None:
        gate = CredentialGate(
            tokens,
            ssh_host=config.ssh_host,
            ssh_port=config.ssh_port,
            timeout=config.ssh_timeout,
            rate_limiter=RateLimiter(config.login_max_attempts, config.login_window_minutes),
        )

    app = FastAPI(
        title="UserLAnd Panel",
        description="Gateway for terminals, metrics and proot sandboxes in a UserLAnd userland",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.tokens = tokens
    app.state.gate = gate
    app.state.terminals = TerminalRegistry(shell=config.shell, queue_size=config.output_queue_size)
    app.state.collector = collector or SystemCollector(process_limit=config.process_limit)
    app.state.distros = distros or ProotDistroController(
        Path(config.distro_registry),
        command=config.distro_command,
        base=config.distro_base,
        timeout=config.distro_timeout,
    )
    app.state.proxy = ProxyBridge(gate, backend_url=config.backend_url, prefix=config.proxy_prefix)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        """Gate /api/* behind a session token."""
        path = request.url.path
        if not path.startswith("/api/") or path in _AUTH_EXEMPT or request.method == "OPTIONS":
            return await call_next(request)

        token = parse_bearer(request.headers.get("authorization"))
        try:
            record = gate.authenticate(token, TokenKind.SESSION)
        except AuthError as e:
            return JSONResponse({"error": e.message}, status_code=e.status_code)
        request.state.username = record.username
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for key, value in SECURITY_HEADERS.items():
            response.headers[key] = value
        path = request.url.path
        if path == config.proxy_prefix or path.startswith(config.proxy_prefix + "/"):
            if "x-frame-options" in response.headers:
                del response.headers["x-frame-options"]
            response.headers["Content-Security-Policy"] = PROXY_CSP
        else:
            response.headers["X-Frame-Options"] = "SAMEORIGIN"
            response.headers["Content-Security-Policy"] = DEFAULT_CSP
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse({"error": exc.message}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        error = InternalError()
        return JSONResponse({"error": error.message}, status_code=error.status_code)

    app.include_router(router)

    # Reverse proxy to ttyd: HTTP and WebSocket share one bridge and one gate
    proxy = app.state.proxy
    proxy_methods = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
    app.add_api_route(proxy.prefix, proxy.forward_http, methods=proxy_methods,
                      include_in_schema=False)
    app.add_api_route(proxy.prefix + "/{path:path}", proxy.forward_http, methods=proxy_methods,
                      include_in_schema=False)
    app.add_api_websocket_route(proxy.prefix, proxy.forward_websocket)
    app.add_api_websocket_route(proxy.prefix + "/{path:path}", proxy.forward_websocket)

    return app


class GatewayServer(uvicorn.Server):
    """uvicorn server that kills all shells before it stops accepting connections."""

    def __init__(self, config: uvicorn.Config, app: FastAPI):
        super().__init__(config)
        self._app = app

    def handle_exit(self, sig, frame):
        if not self.should_exit:
            logger.info(f"Signal {sig} received, cleaning up...")
            self._app.state.terminals.kill_all()
        super().handle_exit(sig, frame)


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(description="UserLAnd Panel gateway server")
    parser.add_argument("--config", type=Path, help="Path to panel.yaml")
    parser.add_argument("--host", help="Bind address (default from config)")
    parser.add_argument("--port", type=int, help="Listening port (default from config)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)

    config = load_config(args.config)
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    app = create_app(config)
    server = GatewayServer(
        uvicorn.Config(app, host=config.host, port=config.port, access_log=False,
                       log_config=None),
        app,
    )
    logger.info(f"UserLAnd Panel running on http://{config.host}:{config.port}")
    logger.info(f"WebSocket endpoint at ws://{config.host}:{config.port}/ws")
    server.run()


if __name__ == "__main__":
    main()
