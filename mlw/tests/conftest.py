"""Pytest configuration and fixtures for mlw tests."""

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from mlw.services.supervisor import ProcessSupervisor
from mlw.utils.config import RunConfig
from mlw.watchers.file_watcher import WatchTarget


class FakeProcess:
    """In-memory stand-in for ``asyncio.subprocess.Process``."""

    def __init__(self, pid: int, ignore_terminate: bool = False) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.signals: list[str] = []
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)

    def exit(self, code: int) -> None:
        """Simulate the process exiting with ``code``."""
        if self.returncode is None:
            self.returncode = code
            self._exited.set()


class FakeSpawner:
    """Records spawn calls and hands out FakeProcess objects."""

    def __init__(
        self,
        ignore_terminate: bool = False,
        failures: int = 0,
        spawn_delay: float = 0.0,
        error: OSError | None = None,
    ) -> None:
        self.ignore_terminate = ignore_terminate
        self.failures = failures
        self.spawn_delay = spawn_delay
        self.error = error or FileNotFoundError(2, "No such file or directory")
        self.calls: list[tuple[tuple[str, ...], dict[str, Any]]] = []
        self.processes: list[FakeProcess] = []
        self.max_running = 0

    async def __call__(self, *command: str, **kwargs: Any) -> FakeProcess:
        self.calls.append((command, kwargs))
        if self.spawn_delay:
            await asyncio.sleep(self.spawn_delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error

        process = FakeProcess(pid=1000 + len(self.processes), ignore_terminate=self.ignore_terminate)
        self.processes.append(process)
        self.max_running = max(self.max_running, len(self.running()))
        return process

    def running(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.returncode is None]


@pytest.fixture
def spawner_factory() -> Callable[..., FakeSpawner]:
    """Factory for fake spawners."""
    return FakeSpawner


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def supervisor_factory() -> Callable[..., ProcessSupervisor]:
    """Factory building supervisors around a fake spawner."""

    def factory(spawner: FakeSpawner, **kwargs: Any) -> ProcessSupervisor:
        kwargs.setdefault("graceful_timeout", 0.5)
        return ProcessSupervisor(["fake-app", "--dev"], spawner=spawner, process_group=False, **kwargs)

    return factory


@pytest.fixture
def src_dir(tmp_path: Path) -> Path:
    """Watched source directory with one existing Python file."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "main.py").write_text("print('hello')\n")
    return src


@pytest.fixture
def config_factory(src_dir: Path) -> Callable[..., RunConfig]:
    """Factory for RunConfig objects watching ``src_dir`` for .py files."""

    def factory(**overrides: Any) -> RunConfig:
        values: dict[str, Any] = {
            "targets": (WatchTarget(src_dir, [".py"]),),
            "command": ("fake-app",),
            "poll_interval": 0.05,
            "debounce": 0.1,
            "graceful_timeout": 0.2,
        }
        values.update(overrides)
        return RunConfig(**values)

    return factory
