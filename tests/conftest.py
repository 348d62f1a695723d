"""
Shared fixtures.

The app is built through create_app() with fakes for the three things
that touch the outside world: the SSH credential probe, the system
collector and the proot-distro command.
"""

import socket

import pytest
from fastapi.testclient import TestClient

from userland_panel.app import create_app
from userland_panel.auth import CredentialGate, RateLimiter, TokenStore
from userland_panel.config import GatewayConfig
from userland_panel.distros import ProotDistroController

ACCOUNTS = {"alice": "secret"}


class FakeGate(CredentialGate):
    """Checks passwords against a dict instead of the local sshd."""

    def __init__(self, tokens, accounts, **kwargs):
        super().__init__(tokens, **kwargs)
        self.accounts = accounts
        self.probes = 0

    async def verify_credentials(self, username, password):
        self.probes += 1
        return self.accounts.get(username) == password


class FakeCollector:
    def __init__(self):
        self.calls = 0
        self.fail = False

    async def snapshot(self):
        self.calls += 1
        if self.fail:
            raise RuntimeError("collector down")
        return {"cpu": {"percent": 12.5}, "sample": self.calls}

    async def cpu(self):
        if self.fail:
            raise RuntimeError("collector down")
        return {"percent": 12.5}

    async def memory(self):
        return {"total": 4096, "used": 1024, "percent": 25.0}

    async def processes(self):
        return [{"pid": 1, "name": "init", "cpu_percent": 0.0}]

    async def ports(self):
        return []

    async def device(self):
        return {"hostname": "localhost"}

    async def battery(self):
        return {"available": False}

    async def temperatures(self):
        return []


class FakeRunner:
    """Stands in for proot-distro; records every invocation."""

    def __init__(self):
        self.calls = []
        self.result = (0, "", "")

    async def __call__(self, *args, timeout=None):
        self.calls.append(args)
        return self.result


def find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def config(tmp_path):
    return GatewayConfig(
        shell="/bin/sh",
        metrics_interval=0.2,
        token_sweep_interval=0.1,
        backend_url=f"http://127.0.0.1:{find_free_port()}",
        distro_registry=str(tmp_path / "distros.json"),
    )


@pytest.fixture
def gate():
    return FakeGate(TokenStore(), dict(ACCOUNTS), rate_limiter=RateLimiter(max_attempts=3))


@pytest.fixture
def collector():
    return FakeCollector()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def distros(tmp_path, runner):
    return ProotDistroController(
        tmp_path / "distros.json",
        runner=runner,
        port_in_use=lambda port: False,
    )


@pytest.fixture
def app(config, gate, collector, distros):
    return create_app(config, gate=gate, collector=collector, distros=distros)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def token(client):
    resp = client.post("/api/auth/login", json={"username": "alice", "password": "secret"})
    assert resp.status_code == 200
    return resp.json()["token"]


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
