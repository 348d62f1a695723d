"""
Distro lifecycle controller.

Disposable proot sandboxes are managed through the ``proot-distro`` tool
that ships with Termux. Each distro is installed under its own alias and
is reserved a network port for the services it runs (sshd/ttyd inside the
sandbox). Which distro owns which port is persisted in data/distros.json,
since proot-distro itself knows nothing about ports.
"""

import asyncio
import json
import logging
import re
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from userland_panel.errors import ConflictError, NotFoundError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")
PORT_MIN = 1024
PORT_MAX = 65535

# (returncode, stdout, stderr)
CommandResult = tuple[int, str, str]
Runner = Callable[..., Awaitable[CommandResult]]


async def run_command(*args: str, timeout: float = 600.0) -> CommandResult:
    """Run a command without a shell and capture its output."""
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def is_port_in_use(port: int) -> bool:
    """Check if a port is actually in use on the system."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("0.0.0.0", port))
            return False
        except OSError:
            return True


@dataclass
class DistroRecord:
    name: str
    port: int
    base: str
    status: str = "installed"
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


class DistroStore:
    """Persists distro records on disk."""

    def __init__(self, path: Path):
        self._path = path
        self._records: dict[str, DistroRecord] = {}
        self._load()

    def _load(self):
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                raw = json.load(f)
            self._records = {item["name"]: DistroRecord(**item) for item in raw}
        except (json.JSONDecodeError, IOError, KeyError, TypeError) as e:
            logger.error(f"Ignoring unreadable distro registry {self._path}: {e}")
            self._records = {}

    def _save(self):
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump([r.to_dict() for r in self.all()], f, indent=2)
        tmp_path.replace(self._path)

    def get(self, name: str) -> Optional[DistroRecord]:
        return self._records.get(name)

    def all(self) -> list[DistroRecord]:
        """All records, oldest first."""
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def ports(self) -> set[int]:
        return {r.port for r in self._records.values()}

    def add(self, record: DistroRecord):
        self._records[record.name] = record
        self._save()

    def remove(self, name: str):
        if name in self._records:
            del self._records[name]
            self._save()


class ProotDistroController:
    """
    create / list / delete for proot sandboxes.

    Mutations are serialized by one lock: installs are slow, and the
    name/port checks must not race with another install in flight.
    """

    def __init__(self, registry_path: Path, command: str = "proot-distro",
                 base: str = "ubuntu", timeout: float = 600.0,
                 runner: Runner = run_command,
                 port_in_use: Callable[[int], bool] = is_port_in_use):
        self._store = DistroStore(Path(registry_path))
        self._command = command
        self._base = base
        self._timeout = timeout
        self._runner = runner
        self._port_in_use = port_in_use
        self._lock = asyncio.Lock()

    def _validate(self, name, port) -> tuple[str, int]:
        if not isinstance(name, str) or not NAME_PATTERN.match(name):
            raise ValidationError(
                "Invalid distro name (lowercase letters, digits, '-' and '_', max 32 chars)"
            )
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ValidationError("Port must be an integer")
        if not PORT_MIN <= port <= PORT_MAX:
            raise ValidationError(f"Port must be between {PORT_MIN} and {PORT_MAX}")
        return name, port

    async def _run(self, *args: str) -> str:
        try:
            code, stdout, stderr = await self._runner(self._command, *args, timeout=self._timeout)
        except asyncio.TimeoutError:
            raise UpstreamError(f"{self._command} {args[0]} timed out", status_code=500)
        except OSError as e:
            raise UpstreamError(f"Cannot run {self._command}: {e}", status_code=500)
        if code != 0:
            detail = (stderr or stdout).strip().splitlines()
            message = detail[-1] if detail else f"exit code {code}"
            raise UpstreamError(f"{self._command} {args[0]} failed: {message}", status_code=500)
        return stdout

    async def create(self, name, port) -> DistroRecord:
        name, port = self._validate(name, port)
        async with self._lock:
            if self._store.get(name) is not None:
                raise ConflictError(f"Distro '{name}' already exists")
            if port in self._store.ports():
                raise ConflictError(f"Port {port} is already assigned to another distro")
            if self._port_in_use(port):
                raise ConflictError(f"Port {port} is already in use")

            logger.info(f"Installing distro '{name}' ({self._base}) on port {port}")
            await self._run("install", "--override-alias", name, self._base)
            record = DistroRecord(name=name, port=port, base=self._base)
            self._store.add(record)
            logger.info(f"Distro '{name}' created")
            return record

    async def list(self) -> list[DistroRecord]:
        return self._store.all()

    async def delete(self, name: str) -> None:
        async with self._lock:
            if self._store.get(name) is None:
                raise NotFoundError(f"Distro '{name}' not found")
            logger.info(f"Removing distro '{name}'")
            await self._run("remove", name)
            self._store.remove(name)
