"""
Background scheduler
Periodically expires canceled subscriptions whose paid period has ended
"""
import asyncio
import logging
from typing import Optional

from core.request_context import new_request_id

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    def __init__(self, reconciler, interval_seconds: int = 3600):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.running = False
        self.tasks = []

    async def start(self):
        if self.running:
            return

        self.running = True
        logger.info("Background scheduler started (expiry sweep every %ss)", self.interval_seconds)

        self.tasks.append(
            asyncio.create_task(self._expiry_sweep_loop())
        )

    async def stop(self):
        if not self.running:
            return

        self.running = False
        logger.info("Background scheduler stopping")

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        self.tasks.clear()

    async def _expiry_sweep_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.interval_seconds)

                if not self.running:
                    break

                await self.run_expiry_sweep()

            except asyncio.CancelledError:
                logger.info("Expiry sweep loop cancelled")
                break
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}")

    async def run_expiry_sweep(self) -> dict:
        new_request_id()
        result = await self.reconciler.expire_lapsed_cancellations()
        if result["processed"]:
            logger.info(f"Expired {result['processed']} lapsed cancellations")
        return result


scheduler: Optional[BackgroundScheduler] = None


async def initialize_scheduler(reconciler, interval_seconds: int = 3600):
    global scheduler
    if scheduler is None:
        scheduler = BackgroundScheduler(reconciler, interval_seconds)
        await scheduler.start()


async def cleanup_scheduler():
    global scheduler
    if scheduler:
        await scheduler.stop()
        scheduler = None
        logger.info("Background scheduler stopped")
