"""
Process Supervisor

Owns the single managed subprocess: spawning it, stopping it gracefully with
a forced kill as fallback, restarting it, and noticing when it exits on its
own. The lifecycle is an explicit state machine:

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED
    STARTING/RUNNING -> CRASHED -> STOPPED
"""

import asyncio
import logging
import os
import shlex
import signal
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence


logger = logging.getLogger(__name__)


class ProcessState(Enum):
    """Lifecycle states of the managed process."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class SpawnError(Exception):
    """The configured command could not be launched."""

    def __init__(self, command: Sequence[str], error: OSError) -> None:
        super().__init__(f"Failed to start {shlex.join(command)!r}: {error}")
        self.command = list(command)
        self.error = error


class ShutdownTimeout(Exception):
    """The process did not exit within the graceful timeout."""

    def __init__(self, pid: int, timeout: float) -> None:
        super().__init__(f"Process {pid} did not exit within {timeout}s")
        self.pid = pid
        self.timeout = timeout


def describe_returncode(returncode: int) -> str:
    """Render a return code, naming the signal for negative (POSIX) codes."""
    if returncode >= 0:
        return f"exit code {returncode}"
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = f"signal {-returncode}"
    return f"killed by {name}"


@dataclass
class ProcessExited:
    """Notification that the managed process exited on its own."""

    pid: int
    returncode: int
    runtime: float

    def describe(self) -> str:
        return describe_returncode(self.returncode)


class ProcessHandle(Protocol):
    """The parts of ``asyncio.subprocess.Process`` the supervisor relies on."""

    pid: int
    returncode: int | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


Spawner = Callable[..., Awaitable[ProcessHandle]]


@dataclass
class ManagedProcess:
    """The running instance of the target command."""

    handle: ProcessHandle
    started_at: float
    stopped_at: float | None = None

    @property
    def pid(self) -> int:
        return self.handle.pid


class ProcessSupervisor:
    """
    Supervises the lifecycle of one managed subprocess.

    All public operations are serialised by an ``asyncio.Lock`` so a restart
    requested while another one is running waits for it instead of
    interleaving with it.
    """

    def __init__(
        self,
        command: Sequence[str],
        graceful_timeout: float = 5.0,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        spawner: Spawner | None = None,
        clock: Callable[[], float] = time.monotonic,
        process_group: bool | None = None,
        history_size: int = 20,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            command: Argument vector to run
            graceful_timeout: Default seconds to wait after the termination request
            cwd: Working directory for the process
            env: Extra environment variables merged over the current environment
            spawner: Coroutine function creating the process, defaults to
                ``asyncio.create_subprocess_exec``
            clock: Monotonic clock used for timestamps
            process_group: Start the process in its own process group and signal
                the whole group (POSIX only, default on POSIX)
            history_size: Number of recent processes kept in ``history``
        """
        if not command:
            raise ValueError("Command must not be empty")
        if graceful_timeout < 0:
            raise ValueError("Graceful timeout must be non-negative")
        if history_size < 1:
            raise ValueError("History size must be at least 1")

        self.command = list(command)
        self.graceful_timeout = graceful_timeout
        self.cwd = cwd
        self.env = env
        self.spawner: Spawner = spawner or asyncio.create_subprocess_exec
        self.clock = clock
        self.process_group = os.name == "posix" if process_group is None else process_group

        self.state = ProcessState.STOPPED
        self.current: ManagedProcess | None = None
        self.history: deque[ManagedProcess] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()

    @property
    def pid(self) -> int | None:
        return self.current.pid if self.current else None

    @property
    def started_at(self) -> float | None:
        return self.current.started_at if self.current else None

    def running_count(self) -> int:
        """Number of spawned processes that have not been reaped yet."""
        return sum(1 for proc in self.history if proc.handle.returncode is None)

    async def start(self) -> None:
        """
        Spawn the command.

        Raises:
            SpawnError: If the executable cannot be found or launched
        """
        async with self._lock:
            await self._start()

    async def stop(self, graceful_timeout: float | None = None) -> int | None:
        """
        Stop the process: terminate, wait, kill on timeout.

        Args:
            graceful_timeout: Seconds to wait before killing, defaults to the
                supervisor's configured timeout

        Returns:
            Exit code of the stopped process, ``None`` if nothing was running
        """
        async with self._lock:
            return await self._stop(graceful_timeout)

    async def restart(self) -> None:
        """
        Stop the current process and start a new one as one operation.

        Raises:
            SpawnError: If the new process cannot be launched; the supervisor is
                then STOPPED
        """
        async with self._lock:
            logger.info("Restarting managed process...")
            await self._stop(None)
            await self._start()

    def poll(self) -> ProcessExited | None:
        """
        Detect a process that exited on its own.

        Returns:
            ProcessExited notification when the RUNNING process has exited, the
            supervisor then moves to CRASHED
        """
        if self.state is not ProcessState.RUNNING or self.current is None:
            return None

        returncode = self.current.handle.returncode
        if returncode is None:
            return None

        self.current.stopped_at = self.clock()
        self.state = ProcessState.CRASHED
        notification = ProcessExited(
            pid=self.current.pid,
            returncode=returncode,
            runtime=self.current.stopped_at - self.current.started_at,
        )
        logger.debug(f"Process {notification.pid} exited on its own ({notification.describe()})")
        return notification

    async def _start(self) -> None:
        if self.state is ProcessState.RUNNING:
            logger.debug("Start requested while already running, ignoring")
            return
        if self.state is ProcessState.CRASHED:
            await self._reap()

        self.state = ProcessState.STARTING
        logger.info(f"Starting: {shlex.join(self.command)}")

        try:
            handle = await self.spawner(*self.command, **self._spawn_kwargs())
        except OSError as e:
            self.state = ProcessState.STOPPED
            raise SpawnError(self.command, e) from e

        self.current = ManagedProcess(handle=handle, started_at=self.clock())
        self.history.append(self.current)
        self.state = ProcessState.RUNNING
        logger.info(f"Process started with pid {handle.pid}")

    def _spawn_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.cwd is not None:
            kwargs["cwd"] = str(self.cwd)
        if self.env:
            kwargs["env"] = {**os.environ, **self.env}
        if self.process_group:
            kwargs["start_new_session"] = True
        return kwargs

    async def _stop(self, graceful_timeout: float | None) -> int | None:
        if self.state is ProcessState.STOPPED or self.current is None:
            self.state = ProcessState.STOPPED
            return None
        if self.state is ProcessState.CRASHED:
            return await self._reap()

        timeout = self.graceful_timeout if graceful_timeout is None else graceful_timeout
        proc = self.current
        self.state = ProcessState.STOPPING
        logger.info(f"Stopping process {proc.pid} (graceful timeout {timeout}s)")

        if proc.handle.returncode is None:
            self._send_signal(proc.handle, graceful=True)
            try:
                await self._wait_for_exit(proc.handle, timeout)
            except ShutdownTimeout as e:
                logger.warning(f"{e}, killing it")
                self._send_signal(proc.handle, graceful=False)
                await proc.handle.wait()

        return await self._reap()

    async def _wait_for_exit(self, handle: ProcessHandle, timeout: float) -> int:
        try:
            return await asyncio.wait_for(handle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ShutdownTimeout(handle.pid, timeout) from None

    async def _reap(self) -> int | None:
        proc = self.current
        if proc is None:
            self.state = ProcessState.STOPPED
            return None

        returncode = await proc.handle.wait()
        if proc.stopped_at is None:
            proc.stopped_at = self.clock()
        self.current = None
        self.state = ProcessState.STOPPED
        logger.info(f"Process {proc.pid} stopped ({describe_returncode(returncode)})")
        return returncode

    def _send_signal(self, handle: ProcessHandle, graceful: bool) -> None:
        try:
            if self.process_group:
                os.killpg(handle.pid, signal.SIGTERM if graceful else signal.SIGKILL)
            elif graceful:
                handle.terminate()
            else:
                handle.kill()
        except ProcessLookupError:
            logger.debug(f"Process {handle.pid} already gone")
