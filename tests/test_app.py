"""End-to-end tests of the HTTP API and the /ws channel."""

import signal
import time

import pytest
import uvicorn
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from userland_panel.app import GatewayServer
from userland_panel.auth import TokenKind


def receive_until(ws, predicate, limit=200):
    """Read JSON messages until predicate matches one; returns it."""
    for _ in range(limit):
        message = ws.receive_json()
        if predicate(message):
            return message
    pytest.fail("expected message never arrived")


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return False


class TestAuthRoutes:

    def test_health_needs_no_token(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert isinstance(body["timestamp"], int)

    def test_login_success(self, client, app):
        resp = client.post("/api/auth/login", json={"username": "alice", "password": "secret"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["username"] == "alice"
        record = app.state.tokens.lookup(body["token"])
        assert record.kind == TokenKind.SESSION

    def test_login_bad_password(self, client, app):
        resp = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        assert resp.status_code == 401
        assert "error" in resp.json()
        assert len(app.state.tokens) == 0

    def test_login_missing_fields(self, client, gate):
        resp = client.post("/api/auth/login", json={"username": "alice"})
        assert resp.status_code == 400
        resp = client.post("/api/auth/login", content=b"not json",
                           headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert gate.probes == 0

    def test_login_rate_limited(self, client):
        for _ in range(3):
            resp = client.post("/api/auth/login", json={"username": "alice", "password": "x"})
            assert resp.status_code == 401
        resp = client.post("/api/auth/login", json={"username": "alice", "password": "secret"})
        assert resp.status_code == 429

    def test_protected_route_requires_token(self, client):
        assert client.get("/api/system/cpu").status_code == 401
        resp = client.get("/api/system/cpu", headers={"Authorization": "Bearer bogus"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_logout_revokes_token(self, client, auth_headers):
        assert client.get("/api/system/cpu", headers=auth_headers).status_code == 200
        assert client.post("/api/auth/logout", headers=auth_headers).status_code == 200
        assert client.get("/api/system/cpu", headers=auth_headers).status_code == 401
        # Logging out again, or without a token, is fine
        assert client.post("/api/auth/logout", headers=auth_headers).status_code == 200
        assert client.post("/api/auth/logout").status_code == 200

    def test_proxy_token_cannot_call_api(self, client, auth_headers):
        url = client.get("/api/terminal/url", headers=auth_headers).json()["url"]
        proxy_token = url.split("token=")[1]
        resp = client.get("/api/system/cpu", headers={"Authorization": f"Bearer {proxy_token}"})
        assert resp.status_code == 403

    def test_security_headers(self, client):
        resp = client.get("/api/health")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "SAMEORIGIN"


class TestSystemRoutes:

    @pytest.mark.parametrize("path", ["all", "cpu", "memory", "processes", "ports",
                                      "device", "battery", "temperatures"])
    def test_sections(self, client, auth_headers, path):
        resp = client.get(f"/api/system/{path}", headers=auth_headers)
        assert resp.status_code == 200

    def test_cpu_shape(self, client, auth_headers):
        assert client.get("/api/system/cpu", headers=auth_headers).json() == {
            "cpu": {"percent": 12.5}
        }

    def test_collector_failure_is_500(self, client, auth_headers, collector):
        collector.fail = True
        resp = client.get("/api/system/all", headers=auth_headers)
        assert resp.status_code == 500
        assert resp.json() == {"error": "collector down"}


class TestTerminalUrl:

    def test_returns_proxy_url(self, client, app, auth_headers):
        resp = client.get("/api/terminal/url", headers=auth_headers)
        assert resp.status_code == 200
        url = resp.json()["url"]
        assert url.startswith("http://testserver/ttyd?token=")
        record = app.state.tokens.lookup(url.split("token=")[1])
        assert record.kind == TokenKind.PROXY
        assert record.username == "alice"


class TestDistroRoutes:

    def test_create_list_delete(self, client, auth_headers, runner):
        resp = client.post("/api/proot/create", json={"name": "dev", "port": 2222},
                           headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["name"] == "dev"
        assert resp.json()["port"] == 2222

        listed = client.get("/api/proot/list", headers=auth_headers).json()
        assert [d["name"] for d in listed] == ["dev"]

        resp = client.delete("/api/proot/delete/dev", headers=auth_headers)
        assert resp.status_code == 200
        assert client.get("/api/proot/list", headers=auth_headers).json() == []
        assert [call[1] for call in runner.calls] == ["install", "remove"]

    def test_validation_and_conflicts(self, client, auth_headers):
        resp = client.post("/api/proot/create", json={"name": "dev"}, headers=auth_headers)
        assert resp.status_code == 400
        resp = client.post("/api/proot/create", json={"name": "dev", "port": 80},
                           headers=auth_headers)
        assert resp.status_code == 400
        client.post("/api/proot/create", json={"name": "dev", "port": 2222}, headers=auth_headers)
        resp = client.post("/api/proot/create", json={"name": "dev", "port": 2223},
                           headers=auth_headers)
        assert resp.status_code == 409

    def test_delete_unknown(self, client, auth_headers):
        resp = client.delete("/api/proot/delete/ghost", headers=auth_headers)
        assert resp.status_code == 404

    def test_requires_auth(self, client):
        assert client.get("/api/proot/list").status_code == 401


def test_unexpected_error_is_a_generic_500(app):
    class BrokenDistros:
        async def list(self):
            raise RuntimeError("registry file vanished")

    app.state.distros = BrokenDistros()
    token = app.state.tokens.issue("alice")
    with TestClient(app, raise_server_exceptions=False) as c:
        resp = c.get("/api/proot/list", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}


class TestDashboardSocket:

    def test_rejects_bad_token(self, client):
        with client.websocket_connect("/ws?token=bogus") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_rejects_proxy_token(self, client, app):
        proxy_token = app.state.gate.issue_proxy_token("alice")
        with client.websocket_connect(f"/ws?token={proxy_token}") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
        assert exc.value.code == 1008

    def test_terminal_round_trip(self, client, token):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"type": "terminal:create", "cols": 80, "rows": 24})
            ready = receive_until(ws, lambda m: m["type"] == "terminal:ready")
            assert ready["id"].startswith("term_")

            ws.send_json({"type": "terminal:resize", "cols": 100, "rows": 30})
            ws.send_json({"type": "terminal:input", "data": "echo hi\n"})
            data = receive_until(ws, lambda m: m["type"] == "terminal:data" and "hi" in m["data"])
            assert "hi" in data["data"]

            ws.send_json({"type": "terminal:input", "data": "exit\n"})
            receive_until(ws, lambda m: m["type"] == "terminal:exit")

    def test_malformed_messages_keep_connection_open(self, client, token):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_text("{not json")
            ws.send_text("[1, 2, 3]")
            ws.send_json({"type": "terminal:input", "data": "before any terminal\n"})
            ws.send_json({"type": "unknown:thing"})
            ws.send_json({"type": "terminal:create"})
            assert receive_until(ws, lambda m: m["type"] == "terminal:ready")

    def test_second_create_replaces_terminal(self, client, app, token):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"type": "terminal:create"})
            first = receive_until(ws, lambda m: m["type"] == "terminal:ready")
            old = app.state.terminals.get(first["id"])

            ws.send_json({"type": "terminal:create"})
            second = receive_until(ws, lambda m: m["type"] == "terminal:ready")

            assert second["id"] == first["id"]
            assert len(app.state.terminals) == 1
            assert app.state.terminals.get(first["id"]) is not old
            assert wait_for(lambda: old.process.returncode is not None)

    def test_closing_connection_kills_terminal(self, client, app, token):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"type": "terminal:create"})
            ready = receive_until(ws, lambda m: m["type"] == "terminal:ready")
            session = app.state.terminals.get(ready["id"])
            assert session.is_alive

        assert wait_for(lambda: session.process.returncode is not None)
        assert wait_for(lambda: len(app.state.terminals) == 0)

    def test_system_subscription(self, client, token, collector):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            ws.send_json({"type": "system:subscribe"})
            first = receive_until(ws, lambda m: m["type"] == "system:data")
            assert first["data"]["cpu"] == {"percent": 12.5}
            second = receive_until(ws, lambda m: m["type"] == "system:data")
            assert second["data"]["sample"] > first["data"]["sample"]
            ws.send_json({"type": "system:unsubscribe"})

        calls = collector.calls
        time.sleep(0.5)
        assert collector.calls == calls

    def test_resubscribe_keeps_single_timer(self, client, token, collector):
        with client.websocket_connect(f"/ws?token={token}") as ws:
            for _ in range(3):
                ws.send_json({"type": "system:subscribe"})
            receive_until(ws, lambda m: m["type"] == "system:data")
            time.sleep(0.5)
            ws.send_json({"type": "system:unsubscribe"})
            # 3 immediate pushes plus the ticks of a single timer
            assert collector.calls <= 8


def test_signal_kills_terminals_before_stopping(app):
    killed = []

    class StubRegistry:
        def kill_all(self):
            killed.append(True)
            return 0

    app.state.terminals = StubRegistry()
    server = GatewayServer(uvicorn.Config(app), app)
    server.handle_exit(signal.SIGTERM, None)

    assert killed == [True]
    assert server.should_exit
