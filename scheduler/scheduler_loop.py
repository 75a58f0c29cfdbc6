import asyncio
import logging

logger = logging.getLogger("automation_service")


class SchedulerLoop:
    """
    Periodic resume sweep. Picks up executions that are due and have no
    task in this process, e.g. orphaned by a crashed or stopped worker.
    """

    def __init__(self, engine, interval_seconds: int = 30):
        self.engine = engine
        self.interval = interval_seconds
        self.running = False

    async def start(self):
        """Starts the polling loop."""
        if self.running:
            return

        self.running = True
        logger.info(f"Scheduler started (every {self.interval}s).")

        while self.running:
            try:
                await self._tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")

            await asyncio.sleep(self.interval)

    def stop(self):
        self.running = False
        logger.info("Scheduler stopped.")

    async def _tick(self) -> int:
        """Process one tick of the scheduler."""
        return await self.engine.resume_due()
