"""
Backup scheduler.

``SchedulerHandle`` drives ``BackupService.run_tick`` from an asyncio task:
one tick on start, then one every incremental interval. Whether a tick
actually backs anything up is decided from persisted state each time, so
missed or duplicated ticks are harmless.

Run one tick from cron or a serverless job with:

    python -m tradein.workers.backup_scheduler --once
"""

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from tradein.models.backup_schemas import TickOutcome
from tradein.services.backup_policy import interval_for

logger = logging.getLogger(__name__)


class SchedulerHandle:
    """Start, stop and restart the periodic backup loop."""

    def __init__(self, service, interval: Optional[timedelta] = None, trigger: str = "system:scheduler"):
        """
        Args:
            service: BackupService to tick
            interval: Fixed tick interval; defaults to the configured incremental frequency
            trigger: Actor recorded on scheduled backups
        """
        self.service = service
        self.fixed_interval = interval
        self.trigger = trigger
        self.interval: Optional[timedelta] = None
        self.ticks = 0
        self.last_outcome: Optional[TickOutcome] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def state(self) -> str:
        if self._task is not None and not self._task.done():
            return "running"
        return "stopped"

    async def start(self) -> bool:
        """
        Start the loop if automatic backups are enabled.

        Returns True when the loop is running after the call.
        """
        if self.state == "running":
            return True

        config = await self.service.get_config()
        if not config.auto_backup_enabled:
            logger.info("Automatic backups disabled, scheduler not started")
            return False

        self.interval = self.fixed_interval or interval_for(config.incremental_backup_frequency)
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(self._stop_event))
        logger.info(f"Backup scheduler started, ticking every {self.interval}")
        return True

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish. Safe to call repeatedly."""
        task, self._task = self._task, None
        if task is None:
            return
        self._stop_event.set()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Backup scheduler stopped")

    async def restart(self) -> bool:
        """Pick up a changed configuration."""
        await self.stop()
        return await self.start()

    async def tick(self) -> TickOutcome:
        outcome = await self.service.run_tick(trigger=self.trigger)
        self.ticks += 1
        self.last_outcome = outcome
        logger.info(f"Backup tick {outcome.status.value}: {outcome.message}")
        return outcome

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                # run_tick reports failures as outcomes, so this is a bug
                logger.error(f"Backup tick raised: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval.total_seconds())
            except asyncio.TimeoutError:
                continue


@asynccontextmanager
async def standalone_service():
    """Connect to the configured database and yield a ready BackupService."""
    from tradein.core.config import settings
    from tradein.core.database import DatabaseManager
    from tradein.providers.shopify import ShopifyContentProvider
    from tradein.services.backup_service import BackupService
    from tradein.services.notifications import BackupEventPublisher

    db_manager = DatabaseManager()
    await db_manager.connect()
    provider = ShopifyContentProvider.from_settings(settings)
    notifier = BackupEventPublisher(db_manager.db, settings)
    try:
        yield BackupService(
            db_manager.db,
            content_provider=provider,
            notifier=notifier,
            lock_duration=timedelta(minutes=settings.backup_lock_minutes),
        )
    finally:
        await notifier.drain()
        if provider is not None:
            await provider.close()
        await db_manager.disconnect()


async def run_once() -> TickOutcome:
    """Run a single tick against the configured database."""
    from tradein.services.backup_service import CRON_ACTOR

    async with standalone_service() as service:
        return await service.run_tick(trigger=CRON_ACTOR)


async def run_forever() -> None:
    """Run the scheduler loop until interrupted."""
    async with standalone_service() as service:
        handle = SchedulerHandle(service)
        try:
            if not await handle.start():
                print("Automatic backups are disabled; enable them in the backup config first.")
                return
            while handle.state == "running":
                await asyncio.sleep(60)
        finally:
            await handle.stop()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Run the trade-in backup scheduler"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single tick and exit (for cron / serverless triggers)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.once:
        outcome = asyncio.run(run_once())
        print(json.dumps(outcome.to_response(), indent=2))
        return 0 if outcome.success else 1

    try:
        asyncio.run(run_forever())
    except KeyboardInterrupt:
        print("\nScheduler interrupted by user")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
