"""
Terminal session registry.

Each terminal is a plain shell process talking over pipes. The sandbox
offers no usable pseudo-terminal, so there is no terminal device: resize
requests are accepted and ignored, and programs that need a TTY will
behave as if run non-interactively.

Process output is delivered as a stream of events through a bounded
per-session queue:

    TerminalData(data)      a chunk of stdout or stderr, in arrival order
    TerminalError(message)  the shell could not be started
    TerminalExit(code)      always last, exactly once per session
"""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import AsyncIterator, Optional, Union

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
# Seconds between checks for the shell having exited
EXIT_POLL_INTERVAL = 0.1
# Seconds the output readers get to reach EOF once the shell has exited
EXIT_DRAIN_TIMEOUT = 1.0


@dataclass(frozen=True)
class TerminalData:
    data: str


@dataclass(frozen=True)
class TerminalExit:
    code: Optional[int]


@dataclass(frozen=True)
class TerminalError:
    message: str


TerminalEvent = Union[TerminalData, TerminalExit, TerminalError]


class SessionStatus(Enum):
    """Lifecycle of a terminal session."""
    STARTING = auto()  # Record registered, process being spawned
    RUNNING = auto()
    EXITED = auto()    # Process ended on its own (or never started)
    KILLED = auto()    # Terminated through kill()/kill_all()


def default_cwd() -> str:
    """Home directory of the user running the gateway."""
    return os.environ.get("HOME") or str(Path.home())


def shell_argv(shell: str) -> list[str]:
    """Command line for an interactive shell."""
    if Path(shell).name == "bash":
        return [shell, "-i"]
    return [shell]


@dataclass
class TerminalSession:
    """One spawned shell tracked under a caller-chosen id."""
    session_id: str
    shell: str
    cwd: str
    queue_size: int = 256
    created_at: datetime = field(default_factory=datetime.now)
    status: SessionStatus = SessionStatus.STARTING
    process: Optional[asyncio.subprocess.Process] = None
    exit_code: Optional[int] = None

    _events: asyncio.Queue = field(init=False, repr=False)
    _pump_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)
    _kill_requested: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        self._events = asyncio.Queue(maxsize=self.queue_size)

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self) -> None:
        """Spawn the shell and start pumping its output into the event queue."""
        try:
            self.process = await asyncio.create_subprocess_exec(
                *shell_argv(self.shell),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=dict(os.environ),
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {self.shell} for terminal {self.session_id}: {e}")
            self.status = SessionStatus.EXITED
            await self._events.put(TerminalError(str(e)))
            await self._events.put(TerminalExit(None))
            return

        if self._kill_requested:
            # kill() arrived while the spawn was in flight
            self._signal_group()
        else:
            self.status = SessionStatus.RUNNING
        logger.info(f"Terminal {self.session_id} started ({self.shell}, pid {self.process.pid})")
        self._pump_task = asyncio.create_task(self._pump())

    async def _emit(self, event: TerminalEvent) -> None:
        if not self._kill_requested:
            # Bounded queue: a slow reader stalls the shell's pipes
            await self._events.put(event)
            return
        # A killed session may have no reader left; never block on it
        if self._events.full():
            if not isinstance(event, TerminalExit):
                return
            self._events.get_nowait()
        self._events.put_nowait(event)

    async def _read_stream(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._emit(TerminalData(tail))
                return
            text = decoder.decode(chunk)
            if text:
                await self._emit(TerminalData(text))

    async def _wait_exit(self, process: asyncio.subprocess.Process) -> int:
        # Process.wait() may also wait for the pipes to close, which a
        # background job can hold open long after the shell is gone
        while process.returncode is None:
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return process.returncode

    async def _pump(self) -> None:
        """Forward both output streams, then report the exit exactly once."""
        process = self.process
        readers = [
            asyncio.create_task(self._read_stream(process.stdout)),
            asyncio.create_task(self._read_stream(process.stderr)),
        ]
        code = await self._wait_exit(process)

        # Output written before the exit still goes out ahead of it
        _, pending = await asyncio.wait(readers, timeout=EXIT_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        for result in await asyncio.gather(*readers, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error(f"Output reader for terminal {self.session_id} failed: {result}")
        if pending:
            logger.debug(f"Terminal {self.session_id} output still held open by a child")

        self.exit_code = code
        if self.status != SessionStatus.KILLED:
            self.status = SessionStatus.EXITED
        logger.info(f"Terminal {self.session_id} exited with code {code}")
        await self._emit(TerminalExit(code))

    async def events(self) -> AsyncIterator[TerminalEvent]:
        """Yield events until (and including) the exit notification."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, TerminalExit):
                return

    async def write(self, data: str) -> None:
        """
        Send input to the shell. Silently ignored once the process is gone.

        Waits for the pipe to drain, so input to a shell that is not reading
        holds up the caller instead of piling up in memory.
        """
        if not self.is_alive or self.process.stdin is None:
            return
        stdin = self.process.stdin
        if stdin.is_closing():
            return
        try:
            stdin.write(data.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Write to terminal {self.session_id} dropped: {e}")

    def resize(self, cols: int, rows: int) -> None:
        """No terminal device behind a pipe; resize has no effect."""

    def _signal_group(self) -> None:
        try:
            os.killpg(self.process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group leader gone and pid reused; fall back to the process itself
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        """Terminate the shell and everything it started. Idempotent."""
        if self._kill_requested:
            return
        self._kill_requested = True
        if self.status != SessionStatus.EXITED:
            self.status = SessionStatus.KILLED
        if self._events.full():
            # Free one slot so a reader blocked in put() can finish; later
            # output is dropped by _emit()
            self._events.get_nowait()
        if self.process is not None:
            # The shell may have exited while its background jobs still run
            self._signal_group()
            logger.info(f"Terminal {self.session_id} killed")


class TerminalRegistry:
    """
    Maps logical terminal ids to shell processes.

    The map is mutated only synchronously between awaits, which is what
    keeps create/kill atomic with respect to other handlers on the loop.
    """

    def __init__(self, shell: str = "bash", queue_size: int = 256):
        self._shell = shell
        self._queue_size = queue_size
        self._sessions: dict[str, TerminalSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    async def create(self, session_id: str, shell: Optional[str] = None,
                     cwd: Optional[str] = None) -> TerminalSession:
        """
        Spawn a shell under session_id.

        An existing session with the same id is killed first, before the
        new process exists, so two processes never share one id.
        """
        old = self._sessions.pop(session_id, None)
        if old is not None:
            old.kill()

        session = TerminalSession(
            session_id=session_id,
            shell=shell or self._shell,
            cwd=cwd or default_cwd(),
            queue_size=self._queue_size,
        )
        self._sessions[session_id] = session
        await session.start()
        return session

    async def write(self, session_id: str, data: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            await session.write(data)

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.resize(cols, rows)

    def kill(self, session_id: str) -> bool:
        """Kill and forget a session. Returns False if the id was unknown."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.kill()
        return True

    def kill_all(self) -> int:
        """Kill every session. Used on shutdown."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.kill()
        if sessions:
            logger.info(f"Killed {len(sessions)} terminal session(s)")
        return len(sessions)
