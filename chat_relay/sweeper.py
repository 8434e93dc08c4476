"""
Retention sweeper.

Deletes messages older than the retention window: once at startup, then on a
fixed interval. Each tick moves idle -> sweeping -> idle whatever the
outcome. A failed sweep is logged and left for the next tick; it never
propagates out of the sweeper task.
"""

import asyncio
import enum
import logging
from datetime import timedelta
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from chat_relay.errors import PersistenceError, SweepError
from chat_relay.metrics import record_sweep
from chat_relay.storage import Clock, MessageStore
from chat_relay.utils import utc_now

logger = logging.getLogger(__name__)


class SweeperState(str, enum.Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


class RetentionSweeper:
    """
    Periodic deletion of expired messages.

    Args:
        store: Store to sweep
        retention_hours: Messages older than this are deleted
        interval_seconds: Time between ticks
        clock: Returns the current time
    """

    def __init__(
        self,
        store: MessageStore,
        retention_hours: float = 48,
        interval_seconds: float = 30 * 60,
        clock: Clock = utc_now,
        sleep: Callable = asyncio.sleep,
    ):
        self.store = store
        self.retention_hours = retention_hours
        self.interval_seconds = interval_seconds
        self.state = SweeperState.IDLE
        self.last_deleted: Optional[int] = None
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    def _sweep(self) -> int:
        cutoff = self._clock() - timedelta(hours=self.retention_hours)
        try:
            return self.store.delete_older_than(cutoff)
        except PersistenceError as e:
            raise SweepError(f"Sweep with cutoff {cutoff.isoformat()} failed") from e

    async def sweep_once(self) -> Optional[int]:
        """
        Run one sweep.

        Returns:
            Number of messages deleted, or None if the sweep failed
        """
        self.state = SweeperState.SWEEPING
        try:
            deleted = await run_in_threadpool(self._sweep)
        except SweepError as e:
            logger.error(f"{e}: {e.__cause__}")
            record_sweep("error")
            return None
        except Exception:
            logger.exception("Unexpected error during sweep")
            record_sweep("error")
            return None
        finally:
            self.state = SweeperState.IDLE

        self.last_deleted = deleted
        record_sweep("ok", deleted)
        logger.info(f"Cleaned {deleted} old messages")
        return deleted

    async def run(self) -> None:
        """Sweep immediately, then every interval_seconds until cancelled."""
        logger.info(
            f"Retention sweeper started: window={self.retention_hours}h, "
            f"interval={self.interval_seconds}s"
        )
        while True:
            await self.sweep_once()
            await self._sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="retention-sweeper")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Retention sweeper stopped")
