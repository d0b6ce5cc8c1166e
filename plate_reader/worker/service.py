"""
Periodic trigger for the batch scheduler.
Runs a scheduling cycle every interval until stopped.
"""

import asyncio
import logging
import signal
from typing import Optional
from datetime import datetime, timedelta, timezone

from plate_reader.worker.scheduler import BatchScheduler

logger = logging.getLogger(__name__)


class SchedulerWorker:
    """Fires `run_pending_batches` on a fixed interval."""

    def __init__(
        self,
        scheduler: BatchScheduler,
        interval_seconds: int = 3 * 60 * 60,
        run_on_start: bool = True,
        ingester=None,
        install_signal_handlers: bool = True,
    ):
        """
        Initialize the periodic worker.

        Args:
            scheduler: Batch scheduler to trigger
            interval_seconds: Time between two triggers
            run_on_start: Trigger once immediately instead of waiting a full interval
            ingester: Optional object whose `import_next()` pulls a new batch before each cycle
            install_signal_handlers: Stop on SIGINT/SIGTERM. Leave off when a server owns the signals
        """
        self.scheduler = scheduler
        self.interval_seconds = max(int(interval_seconds), 1)
        self.run_on_start = run_on_start
        self.ingester = ingester
        self.is_running = False
        self.cycles = 0
        self.last_triggered_at: Optional[datetime] = None
        self.next_trigger_at: Optional[datetime] = None

        if install_signal_handlers:
            self._setup_signal_handlers()

        logger.info(f"✅ Scheduler worker initialized (interval: {self.interval_seconds}s)")

    def _setup_signal_handlers(self):
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self.stop()

        try:
            signal.signal(signal.SIGTERM, signal_handler)
            signal.signal(signal.SIGINT, signal_handler)
        except ValueError:
            # Signal handlers can only be set from main thread
            logger.debug("Signal handlers not set (not in main thread)")

    async def start(self):
        """Start the periodic loop."""
        if self.is_running:
            logger.warning("Worker is already running")
            return

        self.is_running = True
        logger.info("🚀 Starting scheduler worker")

        try:
            await self._main_loop()
        except asyncio.CancelledError:
            logger.info("Worker main loop cancelled")
            raise
        except Exception as e:
            logger.error(f"❌ Worker main loop crashed: {e}", exc_info=True)
        finally:
            self.is_running = False
            self.next_trigger_at = None
            logger.info("🛑 Scheduler worker stopped")

    def stop(self):
        """Stop the periodic loop after the current cycle."""
        logger.info("Stopping scheduler worker...")
        self.is_running = False

    async def _main_loop(self):
        if not self.run_on_start:
            await self._wait_interval()

        while self.is_running:
            try:
                await self.trigger()
            except asyncio.CancelledError:
                self.is_running = False
                raise
            except Exception as e:
                logger.error(f"Error in scheduler cycle: {e}", exc_info=True)

            await self._wait_interval()

    async def _wait_interval(self):
        """Sleep for one interval in short ticks so stop() is honored quickly."""
        self.next_trigger_at = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
        for _ in range(self.interval_seconds):
            if not self.is_running:
                break
            await asyncio.sleep(1)

    async def trigger(self):
        """Run one scheduling cycle now."""
        self.last_triggered_at = datetime.now(timezone.utc)
        self.cycles += 1
        logger.info(f"⏰ Periodic trigger #{self.cycles}")

        if self.ingester is not None:
            try:
                imported = await self.ingester.import_next()
                if imported is not None:
                    logger.info(f"📥 New batch {imported.batch.name} imported from Drive ({imported.imported} photos)")
            except Exception as e:
                logger.error(f"❌ Drive ingestion failed: {e}", exc_info=True)

        report = await self.scheduler.run_pending_batches()
        if report.already_in_progress:
            logger.info("⏭️ Previous cycle still running, trigger skipped")
        elif report.error:
            logger.warning(f"⚠️ Cycle ended with error: {report.error}")
        elif report.batch_name:
            logger.info(
                f"📊 Cycle done - batch {report.batch_name}: {report.successes} success, "
                f"{report.failures} failures of {report.total_photos} in {report.elapsed_seconds}s"
            )
        return report

    def get_status(self) -> dict:
        """Current worker status."""
        return {
            "worker_status": "running" if self.is_running else "stopped",
            "interval_seconds": self.interval_seconds,
            "cycles": self.cycles,
            "drive_ingestion": self.ingester is not None,
            "last_triggered_at": self.last_triggered_at.isoformat() if self.last_triggered_at else None,
            "next_trigger_at": self.next_trigger_at.isoformat() if self.next_trigger_at else None,
        }
