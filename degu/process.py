"""
Supervisor for the main application process.

Runs the setup steps, spawns the main command and watches it. Restart and
exit requests from the control API, the update poller and the crash handler
all go through one Supervisor instance; every change of the lifecycle state
and of the current process happens on the event loop under a single lock,
following TRANSITIONS.

Precedence: a pending exit wins over any restart, and restart requests that
arrive while a restart is already in flight are dropped.
"""

import asyncio
import logging
import os
import shlex
import signal
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .errors import InvalidTransition
from .options import DeguOptions

logger = logging.getLogger(__name__)

# exit code used when a command cannot be executed at all
COMMAND_NOT_FOUND = 127


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"


TRANSITIONS = {
    LifecycleState.STOPPED: {LifecycleState.STARTING},
    LifecycleState.STARTING: {
        LifecycleState.RUNNING,
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,
    },
    LifecycleState.RUNNING: {
        LifecycleState.RESTARTING,
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,
    },
    LifecycleState.RESTARTING: {LifecycleState.STARTING, LifecycleState.STOPPING},
    LifecycleState.STOPPING: {LifecycleState.STOPPED},
}


def exit_status(returncode: int) -> int:
    """Map a Popen return code to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode


@dataclass
class ManagedProcess:
    """The supervised main process."""

    popen: subprocess.Popen
    command: list[str]
    started_at: datetime = field(default_factory=datetime.now)
    returncode: int = None

    @property
    def pid(self) -> int:
        return self.popen.pid

    @property
    def reaped(self) -> bool:
        return self.returncode is not None

    def send_signal(self, sig: int) -> None:
        """Signal the whole process group of the main command."""
        if self.reaped:
            return
        try:
            os.killpg(os.getpgid(self.pid), sig)
        except (ProcessLookupError, PermissionError):
            pass

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "command": self.command,
            "startedAt": self.started_at.isoformat(),
            "uptime": round((datetime.now() - self.started_at).total_seconds(), 3),
        }


class Supervisor:
    """Owns the lifecycle state and the current main process."""

    def __init__(
        self,
        app_dir: Path,
        options: DeguOptions,
        restart_delay: float = 5.0,
        stop_timeout: float = 10.0,
        workdir_lock: asyncio.Lock = None,
    ):
        self.app_dir = Path(app_dir)
        # replaced wholesale on reload; read at each start
        self.options = options
        self.restart_delay = restart_delay
        self.stop_timeout = stop_timeout
        self.restart_count = 0
        self.spawn_count = 0

        self._workdir_lock = workdir_lock or asyncio.Lock()
        self._lock = asyncio.Lock()
        self._state = LifecycleState.STOPPED
        self._process: ManagedProcess = None
        self._pending_exit: int = None
        self._result: int = None
        self._done = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def process(self) -> ManagedProcess | None:
        return self._process

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def result(self) -> int | None:
        return self._result

    async def wait(self) -> int:
        """Wait until the supervisor is done and return its exit code."""
        await self._done.wait()
        return self._result

    async def start(self) -> None:
        """Run the setup steps and spawn the main command."""
        async with self._lock:
            if self.finished:
                return
            if self._state not in (LifecycleState.STOPPED, LifecycleState.RESTARTING):
                logger.info(f"Start ignored, supervisor is {self._state.value}")
                return
            self._transition(LifecycleState.STARTING)
            options = self.options

        async with self._workdir_lock:
            code = await asyncio.to_thread(self._run_steps, options)

            async with self._lock:
                if self._pending_exit is not None:
                    self._finish(self._pending_exit)
                    return
                if code != 0:
                    self._finish(code)
                    return

                logger.info(f"Executing main process {shlex.join(options.main)} ...")
                try:
                    popen = subprocess.Popen(
                        options.main,
                        cwd=self.app_dir,
                        env=self.environment(options),
                        start_new_session=True,  # own process group, killed as a whole
                    )
                except OSError as e:
                    logger.error(f"Cannot start main process: {e}")
                    self._finish(COMMAND_NOT_FOUND)
                    return

                managed = ManagedProcess(popen=popen, command=list(options.main))
                self._process = managed
                self.spawn_count += 1
                self._transition(LifecycleState.RUNNING)
                logger.info(f"Main process started with PID {managed.pid}")
                self._create_task(self._watch(managed))

    async def request_restart(self) -> bool:
        """
        Restart the main process.

        Returns False when the request was dropped: nothing is running, a
        restart is already in flight, or an exit is pending.
        """
        async with self._lock:
            if self._pending_exit is not None or self.finished:
                logger.info("Restart ignored, exit is pending")
                return False
            if self._state is not LifecycleState.RUNNING or self._process is None:
                logger.info(f"Restart ignored, supervisor is {self._state.value}")
                return False

            self._transition(LifecycleState.RESTARTING)
            self.restart_count += 1
            logger.info(f"Restarting main process {self._process.pid} ...")
            self._stop_process(self._process)
            return True

    async def request_exit(self, code: int = 0) -> None:
        """Stop the main process and finish with ``code``. The first exit request wins."""
        async with self._lock:
            if self.finished:
                return
            if self._pending_exit is not None:
                logger.info(f"Exit already pending with code {self._pending_exit}")
                return

            self._pending_exit = code
            logger.info(f"Exiting with code {code} ...")
            previous = self._state

            if previous is LifecycleState.STOPPED:
                self._finish(code)
                return
            self._transition(LifecycleState.STOPPING)

            if previous is LifecycleState.STARTING:
                # steps are never interrupted; start() finishes once they are done
                return
            if self._process is not None:
                self._stop_process(self._process)
            else:
                self._finish(code)

    async def close(self) -> None:
        """Cancel background tasks (kill escalation, delayed restarts)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def environment(self, options: DeguOptions = None) -> dict[str, str]:
        """Process environment with the configured variables on top."""
        options = options or self.options
        env = os.environ.copy()
        env.update(options.env)
        return env

    def snapshot(self) -> dict:
        return {
            "state": self._state.value,
            "process": self._process.to_dict() if self._process else None,
            "restartCount": self.restart_count,
            "exitCode": self._result,
        }

    def _run_steps(self, options: DeguOptions) -> int:
        """Run the setup steps in order; returns the first failing exit status or 0."""
        env = self.environment(options)
        total = len(options.steps)
        for i, step in enumerate(options.steps, start=1):
            logger.info(f"Executing step {i}/{total}: {shlex.join(step)} ...")
            try:
                result = subprocess.run(step, cwd=self.app_dir, env=env)
            except OSError as e:
                logger.error(f"Step {i} could not be started: {e}")
                return COMMAND_NOT_FOUND
            if result.returncode != 0:
                logger.error(f"Step {i} failed with status {result.returncode}")
                return exit_status(result.returncode)
        return 0

    async def _watch(self, managed: ManagedProcess) -> None:
        """Reap the main process and decide what happens next."""
        returncode = await asyncio.to_thread(managed.popen.wait)

        async with self._lock:
            managed.returncode = returncode
            if self._process is managed:
                self._process = None
            logger.info(f"Main process {managed.pid} exited with status {returncode}")

            if self._pending_exit is not None:
                self._finish(self._pending_exit)
                return

            if self._state is LifecycleState.RESTARTING:
                delay = 0
            elif self.options.forever and returncode > 0:
                self._transition(LifecycleState.RESTARTING)
                self.restart_count += 1
                delay = self.restart_delay
                logger.warning(f"Main process crashed, restarting in {delay}s")
            else:
                self._finish(exit_status(returncode))
                return

        if delay:
            await asyncio.sleep(delay)
        await self.start()

    def _stop_process(self, managed: ManagedProcess) -> None:
        managed.send_signal(signal.SIGTERM)
        self._create_task(self._kill_after_timeout(managed))

    async def _kill_after_timeout(self, managed: ManagedProcess) -> None:
        await asyncio.sleep(self.stop_timeout)
        if not managed.reaped:
            logger.warning(f"Main process {managed.pid} did not stop gracefully, forcing kill")
            managed.send_signal(signal.SIGKILL)

    def _transition(self, new: LifecycleState) -> None:
        if new not in TRANSITIONS[self._state]:
            raise InvalidTransition(f"{self._state.value} -> {new.value}")
        logger.debug(f"Lifecycle {self._state.value} -> {new.value}")
        self._state = new

    def _finish(self, code: int) -> None:
        if self._state is not LifecycleState.STOPPED:
            self._transition(LifecycleState.STOPPED)
        self._result = code
        self._done.set()
        logger.info(f"Supervisor finished with exit code {code}")

    def _create_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
