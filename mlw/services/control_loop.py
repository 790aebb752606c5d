"""
Watch and Restart Control Loop

Drives the poll cadence: scans the watch targets, feeds changes through the
debouncer and asks the process supervisor to restart when a burst settles.
It is the only place deciding whether to retry, restart or end the run.
"""

import asyncio
import logging
import signal
import time
from collections import deque
from typing import Any, Awaitable, Callable

from mlw.services.supervisor import ProcessSupervisor, SpawnError
from mlw.utils.config import CrashPolicy, RunConfig, WatcherKind
from mlw.watchers.debounce import Debouncer
from mlw.watchers.event_watcher import EventDrivenDetector
from mlw.watchers.file_watcher import ChangeDetector, ChangeEvent, ScanResult


EXIT_OK = 0
EXIT_FAILURE = 1


def build_detector(config: RunConfig) -> ChangeDetector:
    """Create the change detector selected by the configuration."""
    kwargs: dict[str, Any] = {
        "delete_is_change": config.delete_is_change,
        "ignore_pattern": config.ignore_pattern,
        "ignored_files": [config.config_path] if config.config_path else [],
    }
    if config.watcher is WatcherKind.EVENTS:
        return EventDrivenDetector(config.targets, **kwargs)
    return ChangeDetector(config.targets, **kwargs)


def build_supervisor(config: RunConfig) -> ProcessSupervisor:
    """Create the process supervisor for the configured command."""
    return ProcessSupervisor(
        config.command,
        graceful_timeout=config.graceful_timeout,
        cwd=config.cwd,
        env=config.env,
    )


class ControlLoop:
    """
    Watch-and-restart loop for one run.

    Features:
    - Poll cadence with early wake-up for debounce deadlines and watchdog events
    - Restarts executed as a tracked task, never more than one in flight
    - Spawn retry and crash policies
    - Graceful stop of the managed process on shutdown
    """

    def __init__(
        self,
        config: RunConfig,
        detector: ChangeDetector | None = None,
        supervisor: ProcessSupervisor | None = None,
        debouncer: Debouncer | None = None,
        clock: Callable[[], float] = time.monotonic,
        handle_signals: bool = False,
        max_recent_events: int = 100,
    ) -> None:
        """
        Initialize the control loop.

        Args:
            config: Resolved run configuration
            detector: Change detector, built from the config by default
            supervisor: Process supervisor, built from the config by default
            debouncer: Debouncer, built from the config by default
            clock: Monotonic clock shared with the default debouncer
            handle_signals: Install SIGINT/SIGTERM handlers while running
            max_recent_events: Number of change events kept for status reports
        """
        self.config = config
        self.clock = clock
        self.detector = detector or build_detector(config)
        self.supervisor = supervisor or build_supervisor(config)
        self.debouncer = debouncer or Debouncer(config.debounce, clock=clock)
        self.handle_signals = handle_signals

        self.logger = logging.getLogger(__name__)

        self._shutdown = asyncio.Event()
        self._restart_task: asyncio.Task[None] | None = None
        self._config_mtime: int | None = None
        self._installed_signals: list[signal.Signals] = []

        # Status tracking
        self.is_running = False
        self.start_time: float | None = None
        self.stats = {
            "scans": 0,
            "changes": 0,
            "restarts": 0,
            "crashes": 0,
            "scan_errors": 0,
            "spawn_failures": 0,
        }
        self.recent_events: deque[ChangeEvent] = deque(maxlen=max_recent_events)

    def request_shutdown(self) -> None:
        """Ask the loop to stop the managed process and return."""
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    async def run(self) -> int:
        """
        Run until shutdown or an unrecoverable failure.

        Returns:
            Exit code: 0 on clean shutdown, non-zero on failure
        """
        loop = asyncio.get_running_loop()
        if self.handle_signals:
            self._install_signal_handlers(loop)

        self.is_running = True
        self.start_time = time.time()
        try:
            return await self._run(loop)
        finally:
            await self._shutdown_process()
            if isinstance(self.detector, EventDrivenDetector):
                self.detector.stop()
            self._remove_signal_handlers(loop)
            self.is_running = False

    async def _run(self, loop: asyncio.AbstractEventLoop) -> int:
        if isinstance(self.detector, EventDrivenDetector):
            self.detector.start(loop)

        self._config_mtime = self._read_config_mtime()
        await self._scan()

        self.logger.info("🚀 Starting managed process...")
        try:
            if not await self._launch(self.supervisor.start):
                return EXIT_OK
        except SpawnError as e:
            self.logger.error(f"❌ {e}")
            return EXIT_FAILURE

        next_scan = self.clock() + self.config.poll_interval
        while not self._shutdown.is_set():
            now = self.clock()
            timeout = next_scan - now
            due = self.debouncer.time_until_due(now)
            if due is not None:
                timeout = min(timeout, due)

            woken = await self._wait(timeout)
            if self._shutdown.is_set():
                break

            scan_started = self.clock()
            if woken or scan_started >= next_scan:
                result = await self._scan()
                if result.changed:
                    self.debouncer.on_change()
                next_scan = scan_started + self.config.poll_interval

            exit_code = self._check_process()
            if exit_code is not None:
                return exit_code

            if self._restart_task is not None and self._restart_task.done():
                if not self._finish_restart():
                    return EXIT_FAILURE

            if self.debouncer.poll():
                self._restart_task = asyncio.create_task(self._restart())

        self.logger.info("Shutdown requested")
        return EXIT_OK

    async def _wait(self, timeout: float) -> bool:
        """
        Sleep until the timeout, a shutdown request, an in-flight restart
        finishing or a watchdog wake-up.

        Returns:
            True when woken by the event driven detector
        """
        wake = self.detector.wake if isinstance(self.detector, EventDrivenDetector) else None
        helpers = [asyncio.create_task(self._shutdown.wait())]
        if wake is not None:
            helpers.append(asyncio.create_task(wake.wait()))

        waiters: list[asyncio.Future[Any]] = list(helpers)
        if self._restart_task is not None and not self._restart_task.done():
            waiters.append(self._restart_task)

        try:
            await asyncio.wait(waiters, timeout=max(timeout, 0.0), return_when=asyncio.FIRST_COMPLETED)
        finally:
            for helper in helpers:
                helper.cancel()

        if wake is not None and wake.is_set():
            wake.clear()
            return True
        return False

    async def _scan(self) -> ScanResult:
        result = await asyncio.to_thread(self.detector.scan)
        self.stats["scans"] += 1
        self.stats["scan_errors"] += len(result.errors)

        if result.changed and result.event is not None:
            self.stats["changes"] += 1
            self.recent_events.append(result.event)

        self._check_config_file()
        return result

    async def _restart(self) -> None:
        self.stats["restarts"] += 1
        self.logger.info("🔄 File change detected. Restarting...")
        if await self._launch(self.supervisor.restart):
            self.logger.info("Script restarted successfully.")

    async def _launch(self, operation: Callable[[], Awaitable[None]]) -> bool:
        """
        Run a start/restart, retrying with ``supervisor.start`` on spawn failures.

        Returns:
            True once the process runs, False when a shutdown interrupted the retries

        Raises:
            SpawnError: When every attempt failed
        """
        attempts = self.config.spawn_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await operation()
                return True
            except SpawnError as e:
                self.stats["spawn_failures"] += 1
                if attempt == attempts:
                    raise
                self.logger.warning(
                    f"{e} (attempt {attempt}/{attempts}). Retrying in {self.config.spawn_retry_delay}s..."
                )

            operation = self.supervisor.start
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self.config.spawn_retry_delay)
            except asyncio.TimeoutError:
                continue
            return False
        return False

    def _finish_restart(self) -> bool:
        """Collect the finished restart task; False means the run must end."""
        task = self._restart_task
        self._restart_task = None
        if task is None:
            return True

        self.debouncer.restart_finished()
        if task.cancelled():
            return True

        error = task.exception()
        if isinstance(error, SpawnError):
            self.logger.error(f"❌ {error}; giving up")
            return False
        if error is not None:
            raise error
        return True

    def _check_process(self) -> int | None:
        """Apply the crash policy when the managed process exited on its own."""
        exited = self.supervisor.poll()
        if exited is None:
            return None

        self.stats["crashes"] += 1
        policy = self.config.crash_policy
        message = f"Process {exited.pid} exited on its own ({exited.describe()}) after {exited.runtime:.1f}s"

        if policy is CrashPolicy.EXIT:
            self.logger.error(f"{message}, ending run")
            return EXIT_FAILURE

        if policy is CrashPolicy.RESTART:
            self.logger.warning(f"{message}, restarting in {self.config.debounce}s")
            self.debouncer.on_change()
        else:
            self.logger.warning(f"{message}, waiting for file changes before restarting")
        return None

    def _read_config_mtime(self) -> int | None:
        if self.config.config_path is None:
            return None
        try:
            return self.config.config_path.stat().st_mtime_ns
        except OSError:
            return None

    def _check_config_file(self) -> None:
        """Warn once per edit that configuration changes need a fresh invocation."""
        mtime = self._read_config_mtime()
        if mtime is None or self._config_mtime is None or mtime == self._config_mtime:
            return
        self._config_mtime = mtime
        self.logger.warning(
            f"Configuration file {self.config.config_path} changed; restart mlw to apply the new settings"
        )

    async def _shutdown_process(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None:
            try:
                await task
            except SpawnError as e:
                self.logger.error(f"Restart failed during shutdown: {e}")

        self.debouncer.cancel()
        returncode = await self.supervisor.stop()
        if returncode is not None:
            self.logger.info("Managed process stopped, exiting")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops; KeyboardInterrupt cancels the run instead
                continue
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._installed_signals:
            loop.remove_signal_handler(sig)
        self._installed_signals.clear()

    def _on_signal(self, sig: signal.Signals) -> None:
        self.logger.info(f"Received {sig.name}, shutting down...")
        self.request_shutdown()

    def get_status(self) -> dict[str, Any]:
        """Get current loop status and statistics."""
        uptime = time.time() - self.start_time if self.start_time else 0

        return {
            "is_running": self.is_running,
            "start_time": self.start_time,
            "uptime_seconds": uptime,
            "process": {
                "state": self.supervisor.state.value,
                "pid": self.supervisor.pid,
                "command": list(self.supervisor.command),
            },
            "config": {
                "targets": [str(target.directory) for target in self.config.targets],
                "poll_interval": self.config.poll_interval,
                "debounce": self.config.debounce,
                "graceful_timeout": self.config.graceful_timeout,
                "crash_policy": self.config.crash_policy.value,
            },
            "watched_files": len(self.detector.snapshot),
            "statistics": self.stats.copy(),
            "restart_in_flight": self._restart_task is not None and not self._restart_task.done(),
            "recent_events": self.get_recent_events(),
        }

    def get_recent_events(self, limit: int = 10) -> list[dict[str, Any]]:
        """Get recent change events."""
        recent = list(self.recent_events)[-limit:]
        return [
            {
                "timestamp": event.timestamp,
                "created": sorted(str(p) for p in event.created),
                "modified": sorted(str(p) for p in event.modified),
                "deleted": sorted(str(p) for p in event.deleted),
            }
            for event in recent
        ]
