"""
Batch scheduler.
Picks the next batch with a backlog and drains it photo by photo under a single-flight lock.
"""

import asyncio
import time
import logging
from typing import Optional

from plate_reader.core.config import Config
from plate_reader.core.errors import BatchNotFoundError, BatchStateError, PlateReaderError
from plate_reader.core.models import Batch, BatchStatus, BatchSummary, CycleReport, PhotoStatus
from plate_reader.worker.database import BatchDatabase, PhotoDatabase
from plate_reader.worker.lock import ProcessingLock
from plate_reader.worker.processor import PhotoProcessor, SKIPPED
from plate_reader.worker.recovery import StaleSweeper

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs scheduling cycles: one batch per cycle, photos strictly one at a time."""

    def __init__(
        self,
        photos: PhotoDatabase,
        batches: BatchDatabase,
        processor: PhotoProcessor,
        sweeper: StaleSweeper,
        notifier=None,
        lock: Optional[ProcessingLock] = None,
        config: Optional[Config] = None,
        sleep=asyncio.sleep,
    ):
        """
        Initialize the scheduler.

        Args:
            photos: Photo record store
            batches: Batch record store
            processor: Photo processor
            sweeper: Stale-photo sweeper, run at the start of every batch
            notifier: Optional object with `send_summary(BatchSummary)` and `send_error(name, message)`
            lock: Single-flight state shared with every other trigger of this scheduler
            config: Service configuration
            sleep: Awaitable used for the inter-photo delay
        """
        self.photos = photos
        self.batches = batches
        self.processor = processor
        self.sweeper = sweeper
        self.notifier = notifier
        self.lock = lock or ProcessingLock()
        self.config = config or Config()
        self._sleep = sleep
        self.last_report: Optional[CycleReport] = None

    async def run_pending_batches(self, batch_name: Optional[str] = None) -> CycleReport:
        """
        Run one scheduling cycle.

        A call made while another cycle is running returns immediately with
        `already_in_progress=True` and touches no state.

        Args:
            batch_name: Process this batch instead of the oldest one with a backlog

        Returns:
            CycleReport for the cycle
        """
        if not self.lock.acquire():
            elapsed = self.lock.elapsed_seconds()
            logger.warning(
                f"⚠️ Processing already in progress (started {int(elapsed // 60)} min ago), skipping this trigger"
            )
            return CycleReport(already_in_progress=True, elapsed_seconds=round(elapsed, 1))

        started = time.monotonic()
        logger.info("🔒 Lock acquired - processing cycle started")
        try:
            report = await self._run_cycle(batch_name)
            report.elapsed_seconds = round(time.monotonic() - started, 1)
            self.last_report = report
            return report
        finally:
            self.lock.release()
            logger.info(f"🔓 Lock released after {time.monotonic() - started:.1f}s")

    async def _run_cycle(self, batch_name: Optional[str]) -> CycleReport:
        try:
            batch = await self._select_batch(batch_name)
        except Exception as e:
            logger.error(f"❌ Could not select a batch to process: {e}", exc_info=not isinstance(e, PlateReaderError))
            return CycleReport(batch_name=batch_name, error=str(e))

        if batch is None:
            logger.info("ℹ️ No pending batches to process")
            return CycleReport()

        try:
            return await self.process_batch(batch)
        except Exception as e:
            logger.error(f"❌ Error processing batch {batch.name}: {e}", exc_info=True)
            await self._fail_batch(batch, e)
            return CycleReport(batch_name=batch.name, error=str(e))

    async def _select_batch(self, batch_name: Optional[str]) -> Optional[Batch]:
        if batch_name is None:
            batch = await self.batches.next_for_processing()
            if batch is not None:
                waiting = await self.batches.count_waiting()
                verb = "Resuming" if batch.status == BatchStatus.PROCESSING else "Starting"
                logger.info(f"📋 {verb} batch {batch.name} ({waiting - 1} more waiting)")
            return batch

        batch = await self.batches.get_by_name(batch_name)
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_name} not found")
        if batch.status in (BatchStatus.CONCLUDED, BatchStatus.IMPORTING):
            raise BatchStateError(f"Batch {batch_name} cannot be processed in status {batch.status.value}")
        logger.info(f"📋 Processing requested batch {batch.name}")
        return batch

    async def process_batch(self, batch: Batch) -> CycleReport:
        """
        Drain a batch's pending photos and finalize its aggregates.

        The batch is concluded only when the final count finds nothing pending or
        processing; otherwise it stays 'processing' and the next cycle resumes it.
        """
        logger.info(f"📦 Processing batch {batch.name}")
        batch = await self.batches.mark_processing(batch)

        await self.sweeper.reset_stale(batch.id)

        digit_length = batch.digit_length or self.config.digit_length
        processed = 0
        while True:
            page = await self.photos.fetch_pending(batch.id, self.config.page_size)
            if not page:
                break

            claimed = 0
            for photo in page:
                result = await self.processor.process_photo(photo, digit_length)
                if result.outcome == SKIPPED:
                    continue
                claimed += 1
                processed += 1
                await self._sleep(self.config.photo_delay_seconds)

            if claimed == 0:
                logger.warning(f"⚠️ No photo of the current page of {batch.name} could be claimed, stopping")
                break
            logger.info(f"📊 {batch.name}: {processed} photos processed this cycle")

        counts = await self.photos.count_by_status(batch.id)
        finished = counts.get(PhotoStatus.PENDING) == 0 and counts.get(PhotoStatus.PROCESSING) == 0
        batch = await self.batches.finalize(batch, counts, concluded=finished)

        if finished:
            logger.info(
                f"✅ Batch {batch.name} concluded: {counts.get(PhotoStatus.SUCCESS)} success, "
                f"{counts.failures} failures ({counts.get(PhotoStatus.WARNING)} for review) of {counts.total}"
            )
            await self._notify_summary(batch)
        else:
            logger.info(
                f"⏸️ Batch {batch.name} left in processing: {counts.get(PhotoStatus.PENDING)} pending, "
                f"{counts.get(PhotoStatus.PROCESSING)} processing"
            )

        return CycleReport(
            batches_processed=1 if finished else 0,
            total_photos=counts.total,
            successes=counts.get(PhotoStatus.SUCCESS),
            failures=counts.failures,
            batch_name=batch.name,
        )

    async def _notify_summary(self, batch: Batch):
        if self.notifier is None:
            return
        summary = BatchSummary(
            batch_name=batch.name,
            total=batch.total_photos,
            success=batch.success_photos,
            failures=batch.failure_photos,
            warnings=batch.warning_photos,
            errors=batch.error_photos,
            duration_seconds=batch.total_duration_seconds or 0.0,
            actual_cost=batch.actual_cost,
        )
        try:
            await self.notifier.send_summary(summary)
        except Exception as e:
            logger.error(f"❌ Failed to send summary for batch {batch.name}: {e}")

    async def _fail_batch(self, batch: Batch, error: Exception):
        """Move a batch to 'error', keeping whatever aggregates can still be computed."""
        kind = error.kind if isinstance(error, PlateReaderError) else "pipeline"
        try:
            counts = await self.photos.count_by_status(batch.id)
            batch = await self.batches.finalize(batch, counts, concluded=False) or batch
        except Exception as e:
            logger.warning(f"Could not refresh aggregates of failed batch {batch.name}: {e}")

        try:
            await self.batches.record_error(batch, str(error), kind=kind)
        except Exception as e:
            logger.error(f"❌ Could not mark batch {batch.name} as error: {e}")

        if self.notifier is not None:
            try:
                await self.notifier.send_error(batch.name, str(error))
            except Exception as e:
                logger.error(f"❌ Failed to send error email for batch {batch.name}: {e}")
