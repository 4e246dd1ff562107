"""
Wiring of one degu instance.

bootstrap() performs the blocking startup work (remote resolution, initial
sync, options load). run() then starts the control API and the update
scheduler, spawns the main process and waits for the supervisor to finish.
"""

import asyncio
import logging
import secrets
import signal
import time
from datetime import datetime

import uvicorn

from .api import create_app
from .config import Settings
from .errors import ConfigurationError
from .monitor import process_metrics
from .options import DeguOptions, load_options
from .poller import UpdatePoller
from .process import Supervisor
from .remote import RemoteSpec, resolve_remote
from .sync import Synchronizer

logger = logging.getLogger(__name__)


class Degu:
    """A supervisor instance: remote, synchronizer, supervisor, poller and options."""

    def __init__(
        self,
        settings: Settings,
        remote: RemoteSpec,
        synchronizer: Synchronizer = None,
        options: DeguOptions = None,
    ):
        self.run_id = secrets.token_hex(8)
        self.started_at = datetime.now()
        self._started = time.monotonic()

        self.settings = settings
        self.remote = remote
        self.synchronizer = synchronizer or Synchronizer(remote, settings)
        self.options = options or DeguOptions()
        self.supervisor = Supervisor(
            settings.app_dir,
            self.options,
            restart_delay=settings.restart_delay,
            stop_timeout=settings.stop_timeout,
            workdir_lock=self.synchronizer.lock,
        )
        self.poller = UpdatePoller(self.synchronizer, self.supervisor, self.options.update_scheduler)
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def bootstrap(cls, settings: Settings) -> "Degu":
        """Resolve the remote, fetch the codebase and load the options. Blocking."""
        remote = resolve_remote(
            settings.remote_type,
            settings.remote_url,
            settings.remote_branch,
            settings.app_dir,
        )
        synchronizer = Synchronizer(remote, settings)
        synchronizer.sync()

        options = load_options(settings.degu_file)
        package_json = settings.app_dir / "package.json"
        if not (package_json.exists() or settings.degu_file.exists()):
            raise ConfigurationError(f"{package_json} or {settings.degu_file} is required")

        return cls(settings, remote, synchronizer, options)

    @property
    def uptime(self) -> float:
        return round(time.monotonic() - self._started, 3)

    async def reload_options(self) -> DeguOptions:
        """
        Re-read the options file.

        The running process keeps going; new steps/main/env apply to the next
        start. Raises ConfigurationError and keeps the old options on failure.
        """
        options = await asyncio.to_thread(load_options, self.settings.degu_file)
        self.options = options
        self.supervisor.options = options
        await self.poller.reconfigure(options.update_scheduler)
        logger.info("Options reloaded")
        return options

    def schedule_exit(self, code: int = 0, delay: float = 0) -> asyncio.Task:
        """Request an exit after ``delay`` seconds without waiting for it."""
        async def delayed_exit():
            if delay:
                await asyncio.sleep(delay)
            await self.supervisor.request_exit(code)

        task = asyncio.create_task(delayed_exit())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def status(self) -> dict:
        """Status document served by the control API."""
        supervisor = self.supervisor.snapshot()
        process = supervisor["process"]
        if process:
            process.update(await asyncio.to_thread(process_metrics, process["pid"]))

        synced_at = self.synchronizer.synced_at
        return {
            "runId": self.run_id,
            "uptime": self.uptime,
            "startedAt": self.started_at.isoformat(),
            "state": supervisor["state"],
            "restartCount": supervisor["restartCount"],
            "process": process,
            "remote": self.remote.sanitized(),
            "revision": self.synchronizer.revision,
            "syncedAt": synced_at.isoformat() if synced_at else None,
            "updateScheduler": self.poller.to_dict(),
            "options": self.options.to_dict(),
        }

    async def run(self) -> int:
        """Serve the control API, supervise the main process, return the exit code."""
        logger.info(f"App is starting up #{self.run_id} ...")
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.schedule_exit, 0)

        server, server_task = None, None
        api = self.options.api
        if api.enable and api.port:
            logger.info(
                f"Starting web management API port={api.port} prefix={api.normalized_prefix} ..."
            )
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(self),
                    host=self.settings.api_host,
                    port=api.port,
                    log_config=None,
                    access_log=False,
                )
            )
            server_task = asyncio.create_task(server.serve())
            while not server.started and not server_task.done():
                await asyncio.sleep(0.05)
            if server_task.done():
                logger.error("Web management API failed to start")
                return 1

        await self.poller.start()
        await self.supervisor.start()

        if server_task is not None:
            done_task = asyncio.create_task(self.supervisor.wait())
            await asyncio.wait({done_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
            if not self.supervisor.finished:
                logger.info("Web management API stopped, exiting ...")
                await self.supervisor.request_exit(0)
        code = await self.supervisor.wait()

        await self.shutdown(server, server_task)
        return code

    async def shutdown(self, server: uvicorn.Server = None, server_task: asyncio.Task = None):
        await self.poller.stop()
        for task in list(self._tasks):
            task.cancel()
        if server is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
        await self.supervisor.close()
