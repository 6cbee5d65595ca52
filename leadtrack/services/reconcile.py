"""
Deferred reconciliation.

After an optimistic write succeeds the working copy is refreshed from the
backend a little later. Each scheduled refresh has a cancel handle so a newer
mutation can drop a stale pending refresh instead of racing it.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)


class ScheduledRefresh:
    """Cancel handle for one pending refresh."""

    def __init__(self, delay: float):
        self.delay = delay
        self.started = False
        self.task = None

    def cancel(self) -> bool:
        # Only a refresh still waiting out its delay can be dropped
        if self.task is None or self.started or self.task.done():
            return False
        self.task.cancel()
        return True

    @property
    def pending(self) -> bool:
        return self.task is not None and not self.task.done()

    def __await__(self):
        return self.task.__await__()


class ReconcileScheduler:

    def __init__(self, refresh):
        self._refresh = refresh
        self._pending = None

    @property
    def pending(self):
        if self._pending is not None and self._pending.pending:
            return self._pending
        return None

    def schedule(self, delay: float) -> ScheduledRefresh:
        """Schedules a refresh ``delay`` seconds from now, superseding any pending one."""
        self.cancel_pending()
        handle = ScheduledRefresh(delay)
        handle.task = asyncio.create_task(self._delayed(handle))
        self._pending = handle
        logger.info(f"[Reconcile] Refresh scheduled in {delay}s")
        return handle

    def cancel_pending(self) -> bool:
        if self._pending is None:
            return False
        cancelled = self._pending.cancel()
        if cancelled:
            logger.debug("[Reconcile] Pending refresh superseded")
        self._pending = None
        return cancelled

    async def run_now(self):
        """Drops any pending refresh and refreshes immediately."""
        self.cancel_pending()
        logger.info("[Reconcile] Forced refresh")
        return await self._refresh()

    async def _delayed(self, handle: ScheduledRefresh):
        await asyncio.sleep(handle.delay)
        handle.started = True
        return await self._refresh()

    async def aclose(self):
        handle = self._pending
        self.cancel_pending()
        if handle is not None and handle.task is not None:
            try:
                await handle.task
            except asyncio.CancelledError:
                pass
