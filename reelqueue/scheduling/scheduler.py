"""
In-process scheduler that drives the publish and token refresh cycles.

``InternalScheduler`` owns two asyncio tasks:

- the publish loop (first tick after ``startup_delay_seconds``, then every
  ``interval_seconds``), running :meth:`PublishCycleRunner.run_cycle`;
- the token loop (first tick after five minutes, then daily), running
  :meth:`TokenManager.refresh_expiring_tokens`.

Each loop awaits its cycle before sleeping, so a cycle never overlaps
itself; a slow cycle delays the next tick instead.  Any exception raised
by a cycle is logged and the loop carries on.

Deployment must stay single-instance: two processes would both publish
the same due posts.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from reelqueue.config import PublishingConfig, TokenRefreshConfig, get_settings
from reelqueue.scheduling.models import CycleResult, TokenRefreshResult

logger = logging.getLogger(__name__)


class SchedulerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class InternalScheduler:
    """Owns the two recurring cycles of the scheduler process.

    Args:
        publisher: :class:`~reelqueue.scheduling.publisher.PublishCycleRunner`.
        tokens: :class:`~reelqueue.scheduling.token_refresh.TokenManager`.
        publishing: Publish loop cadence.
        token_refresh: Token loop cadence.
    """

    def __init__(
        self,
        publisher: "PublishCycleRunner",  # noqa: F821
        tokens: "TokenManager",  # noqa: F821
        publishing: Optional[PublishingConfig] = None,
        token_refresh: Optional[TokenRefreshConfig] = None,
    ) -> None:
        settings = None if (publishing and token_refresh) else get_settings()
        self.publisher = publisher
        self.tokens = tokens
        self.publishing = publishing or settings.publishing
        self.token_refresh = token_refresh or settings.token_refresh
        self.state = SchedulerState.STOPPED
        self._tasks: List[asyncio.Task] = []
        self._publish_lock = asyncio.Lock()
        self._token_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self.state is SchedulerState.RUNNING

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self) -> bool:
        """Start both loops on the running event loop.

        Returns:
            ``False`` if the scheduler was already running.
        """
        if self.state is not SchedulerState.STOPPED:
            logger.warning("[SCHEDULER] Already %s, ignoring start", self.state.value)
            return False

        self._tasks = [
            asyncio.create_task(
                self._loop(
                    "publish",
                    self.trigger_publish_cycle,
                    self.publishing.startup_delay_seconds,
                    self.publishing.interval_seconds,
                ),
                name="reelqueue-publish-loop",
            ),
            asyncio.create_task(
                self._loop(
                    "token-refresh",
                    self.trigger_token_refresh,
                    self.token_refresh.startup_delay_seconds,
                    self.token_refresh.interval_hours * 3600,
                ),
                name="reelqueue-token-loop",
            ),
        ]
        self.state = SchedulerState.RUNNING
        logger.info(
            "[SCHEDULER] Started (publish every %ds, token refresh every %dh)",
            self.publishing.interval_seconds,
            self.token_refresh.interval_hours,
        )
        return True

    async def stop(self) -> None:
        """Cancel both loops and wait for them to exit.

        A cycle in progress is interrupted; stuck recovery picks up any
        post it left in flight.
        """
        if self.state is not SchedulerState.RUNNING:
            return
        self.state = SchedulerState.STOPPING
        logger.info("[SCHEDULER] Stop requested")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        self.state = SchedulerState.STOPPED
        logger.info("[SCHEDULER] Stopped")

    async def _loop(
        self,
        name: str,
        cycle: Callable[[], Awaitable[object]],
        delay_seconds: float,
        interval_seconds: float,
    ) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            while True:
                try:
                    await cycle()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("[SCHEDULER] Unexpected error in %s cycle", name)
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("[SCHEDULER] %s loop cancelled", name)
            raise

    # ================================================================
    # CYCLES
    # ================================================================

    async def trigger_publish_cycle(self) -> CycleResult:
        """Run one publish cycle now, waiting for a running one to finish."""
        async with self._publish_lock:
            return await self.publisher.run_cycle()

    async def trigger_token_refresh(self) -> TokenRefreshResult:
        """Run one token refresh cycle now."""
        async with self._token_lock:
            return await self.tokens.refresh_expiring_tokens()


__all__ = ["InternalScheduler", "SchedulerState"]
