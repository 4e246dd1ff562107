"""
Update scheduler.

Periodically asks the remote for its current revision and compares it with
the revision last applied to the app directory. Only a changed revision
triggers a full sync followed by the configured action (restart or exit),
so an unchanged remote never causes a restart.
"""

import asyncio
import logging
from datetime import datetime

from .errors import SyncError
from .options import MIN_UPDATE_INTERVAL, OnUpdate, UpdateSchedulerOptions
from .process import Supervisor
from .remote import RemoteKind
from .sync import Synchronizer

logger = logging.getLogger(__name__)


class UpdatePoller:
    """Polls the remote for changes and applies them."""

    def __init__(self, synchronizer: Synchronizer, supervisor: Supervisor, options: UpdateSchedulerOptions):
        self.synchronizer = synchronizer
        self.supervisor = supervisor
        self.options = options
        self.last_checked_at = None
        self.last_remote_revision: str = None
        self._task: asyncio.Task = None
        self._update: asyncio.Task = None

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "lastCheckedAt": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "lastRemoteRevision": self.last_remote_revision,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def can_run(self) -> bool:
        """Whether the current options allow polling; logs why not."""
        if not self.options.enable:
            return False
        if self.synchronizer.remote.kind is RemoteKind.NONE:
            logger.warning("Update scheduler enabled but no remote is set, not polling")
            return False
        if not self.options.interval_valid:
            logger.warning(
                f"Update scheduler interval {self.options.interval}s is below the "
                f"{MIN_UPDATE_INTERVAL}s minimum, scheduler disabled"
            )
            return False
        return True

    async def start(self) -> bool:
        """Start the polling loop. Returns False if the options keep it disabled."""
        if self.running:
            return True
        if not self.can_run():
            return False
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"Update scheduler started interval={self.options.interval}s "
            f"onUpdate={self.options.on_update.value}"
        )
        return True

    async def stop(self):
        """Stop the polling loop, letting an update that is being applied finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Update scheduler stopped")
        if self._update is not None and not self._update.done():
            logger.info("Waiting for the running update to finish ...")
            (result,) = await asyncio.gather(self._update, return_exceptions=True)
            if isinstance(result, Exception):
                logger.error(f"Error in update scheduler: {result}")

    async def reconfigure(self, options: UpdateSchedulerOptions) -> bool:
        """Apply reloaded options by restarting the loop."""
        await self.stop()
        self.options = options
        return await self.start()

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.options.interval)
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Error in update scheduler: {e}")

    async def check(self) -> bool:
        """
        Compare the remote revision with the applied one; sync and act on change.

        Returns True when an update was applied.
        """
        try:
            remote_revision = await asyncio.to_thread(self.synchronizer.remote_revision)
        except SyncError as e:
            logger.warning(f"Cannot check remote for updates: {e}")
            return False
        finally:
            self.last_checked_at = datetime.now()

        self.last_remote_revision = remote_revision
        local_revision = self.synchronizer.revision
        if remote_revision == local_revision:
            logger.debug(f"No update, remote is at {remote_revision}")
            return False

        logger.info(f"Remote changed {local_revision or '-'} -> {remote_revision}, updating ...")
        # sync and the follow-up action run to completion even if the loop is stopped
        self._update = asyncio.ensure_future(self._apply_update())
        return await asyncio.shield(self._update)

    async def _apply_update(self) -> bool:
        try:
            applied = await self.synchronizer.resync()
        except SyncError as e:
            logger.error(f"Update failed, will retry at next check: {e}")
            return False

        if self.options.on_update is OnUpdate.EXIT:
            logger.info(f"Updated to {applied}, exiting")
            await self.supervisor.request_exit(0)
        else:
            logger.info(f"Updated to {applied}, restarting")
            await self.supervisor.request_restart()
        return True
