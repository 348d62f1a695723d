"""
Per-connection handler for the dashboard WebSocket (/ws).

Client -> server messages (JSON):
    {"type": "terminal:create", "cols": 80, "rows": 24}
    {"type": "terminal:input", "data": "ls\\n"}
    {"type": "terminal:resize", "cols": 100, "rows": 30}
    {"type": "system:subscribe"}
    {"type": "system:unsubscribe"}

Server -> client messages:
    {"type": "terminal:ready", "id": "<terminal id>"}
    {"type": "terminal:data", "data": "<text>"}
    {"type": "terminal:exit"}
    {"type": "system:data", "data": {...snapshot}}

Messages are handled one at a time in arrival order. Anything malformed
is logged and dropped; the connection stays open.
"""

import asyncio
import json
import logging
import secrets
import time
from typing import Awaitable, Callable, Optional

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from userland_panel.metrics import MetricsPublisher
from userland_panel.terminals import (
    TerminalData,
    TerminalError,
    TerminalExit,
    TerminalRegistry,
    TerminalSession,
)

logger = logging.getLogger(__name__)


def generate_terminal_id() -> str:
    return f"term_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


class ClientConnection:
    """Connection-scoped state: one terminal id and one metrics subscription."""

    def __init__(self, websocket: WebSocket, username: str, registry: TerminalRegistry,
                 collect: Callable[[], Awaitable[dict]], metrics_interval: float = 2.0):
        self.websocket = websocket
        self.username = username
        self._registry = registry
        self._send_lock = asyncio.Lock()
        self.terminal_id: Optional[str] = None
        self._forward_task: Optional[asyncio.Task] = None
        self.metrics = MetricsPublisher(collect, self.send, interval=metrics_interval)

    async def send(self, message: dict) -> None:
        """Serialize one JSON message onto the socket."""
        async with self._send_lock:
            if self.websocket.client_state != WebSocketState.CONNECTED:
                return
            await self.websocket.send_text(json.dumps(message))

    # ------------------------------------------------------------------
    # Terminal plumbing
    # ------------------------------------------------------------------

    async def _forward_events(self, session: TerminalSession) -> None:
        """Relay one session's events to the client until it exits."""
        try:
            async for event in session.events():
                if isinstance(event, TerminalData):
                    await self.send({"type": "terminal:data", "data": event.data})
                elif isinstance(event, TerminalError):
                    await self.send({"type": "terminal:data",
                                     "data": f"\r\nError: {event.message}\r\n"})
                elif isinstance(event, TerminalExit):
                    await self.send({"type": "terminal:exit"})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Stopped forwarding terminal {session.session_id}: {e}")

    def _stop_forwarding(self) -> None:
        if self._forward_task is not None:
            self._forward_task.cancel()
            self._forward_task = None

    async def create_terminal(self) -> None:
        # Re-creating on the same connection replaces the previous shell
        if self.terminal_id is None:
            self.terminal_id = generate_terminal_id()
        self._stop_forwarding()
        session = await self._registry.create(self.terminal_id)
        self._forward_task = asyncio.create_task(self._forward_events(session))
        await self.send({"type": "terminal:ready", "id": self.terminal_id})

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Dropping malformed WebSocket message: {e}")
            return
        if not isinstance(message, dict):
            logger.warning("Dropping WebSocket message that is not an object")
            return

        msg_type = message.get("type")
        if msg_type == "terminal:create":
            await self.create_terminal()
        elif msg_type == "terminal:input" and self.terminal_id:
            data = message.get("data")
            if isinstance(data, str):
                await self._registry.write(self.terminal_id, data)
        elif msg_type == "terminal:resize" and self.terminal_id:
            self._registry.resize(self.terminal_id, message.get("cols"), message.get("rows"))
        elif msg_type == "system:subscribe":
            self.metrics.subscribe()
        elif msg_type == "system:unsubscribe":
            self.metrics.unsubscribe()
        else:
            logger.debug(f"Ignoring WebSocket message of type {msg_type!r}")

    async def run(self) -> None:
        """Process messages until the client goes away, then clean up."""
        logger.info(f"WebSocket client connected ({self.username})")
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                if raw is None:
                    continue
                try:
                    await self.handle_message(raw)
                except WebSocketDisconnect:
                    raise
                except Exception as e:
                    logger.error(f"WebSocket message error: {e}")
        except WebSocketDisconnect:
            pass
        finally:
            self.close()
            logger.info(f"WebSocket client disconnected ({self.username})")

    def close(self) -> None:
        """Kill the connection's terminal and stop its metrics timer."""
        self.metrics.unsubscribe()
        self._stop_forwarding()
        if self.terminal_id is not None:
            self._registry.kill(self.terminal_id)
