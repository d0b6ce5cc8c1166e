"""
Worker management module.
Builds the process-wide scheduler and runs the periodic trigger in a background thread.
"""

import asyncio
import logging
import threading
import atexit
import time
from typing import Optional

from plate_reader.core.config import config
from plate_reader.core.extraction import NumberExtractor
from plate_reader.service.drive import DriveDownloader
from plate_reader.service.email import EmailNotifier
from plate_reader.service.rekognition import RekognitionDetector
from plate_reader.worker.database import BatchDatabase, PhotoDatabase
from plate_reader.worker.importer import BatchImporter
from plate_reader.worker.ingest import DriveIngester
from plate_reader.worker.lock import ProcessingLock
from plate_reader.worker.processor import PhotoProcessor
from plate_reader.worker.recovery import StaleSweeper
from plate_reader.worker.scheduler import BatchScheduler
from plate_reader.worker.service import SchedulerWorker
from plate_reader.worker.storage import PhotoStorage

logger = logging.getLogger(__name__)

# Global worker state
_client = None
_scheduler: Optional[BatchScheduler] = None
_importer: Optional[BatchImporter] = None
_worker_instance: Optional[SchedulerWorker] = None
_worker_thread: Optional[threading.Thread] = None
_worker_stopped = False
_build_guard = threading.Lock()

# Shared by every trigger in this process: periodic, API and CLI
processing_lock = ProcessingLock()


def get_client():
    """Process-wide Supabase client."""
    global _client
    if _client is None:
        _client = config._get_supabase_client()
    return _client


def build_scheduler(client=None) -> BatchScheduler:
    """Wire a scheduler with the production collaborators."""
    client = client or get_client()
    photos = PhotoDatabase(client)
    batches = BatchDatabase(client)
    extractor = NumberExtractor(RekognitionDetector(config), min_confidence=config.min_confidence)
    processor = PhotoProcessor(photos, PhotoStorage(config), extractor, config)
    return BatchScheduler(
        photos,
        batches,
        processor,
        StaleSweeper(photos, stale_minutes=config.stale_minutes),
        notifier=EmailNotifier(config),
        lock=processing_lock,
        config=config,
    )


def get_scheduler() -> BatchScheduler:
    """Process-wide scheduler instance."""
    global _scheduler
    with _build_guard:
        if _scheduler is None:
            _scheduler = build_scheduler()
    return _scheduler


def get_importer() -> BatchImporter:
    """Process-wide importer instance."""
    global _importer
    with _build_guard:
        if _importer is None:
            client = get_client()
            _importer = BatchImporter(PhotoDatabase(client), BatchDatabase(client), config)
    return _importer


def build_ingester() -> Optional[DriveIngester]:
    """Drive folder ingester, when a folder is configured."""
    if not config.drive_folder_id:
        return None
    client = get_client()
    return DriveIngester(
        DriveDownloader(config),
        get_importer(),
        BatchDatabase(client),
        config.drive_folder_id,
        file_pattern=config.drive_file_pattern,
    )


def get_worker_instance() -> Optional[SchedulerWorker]:
    """Get the current worker instance."""
    return _worker_instance


def start_worker() -> bool:
    """
    Start the periodic trigger in a background thread.

    Returns:
        True if worker was started, False if already running
    """
    global _worker_instance, _worker_thread, _worker_stopped

    if is_worker_running():
        logger.info("Worker is already running")
        return False

    _worker_stopped = False

    # The hosting server owns SIGINT/SIGTERM and stops the worker from its shutdown hook
    _worker_instance = SchedulerWorker(
        get_scheduler(),
        interval_seconds=config.scheduler_interval_seconds,
        ingester=build_ingester(),
        install_signal_handlers=False,
    )
    worker = _worker_instance

    def run_worker():
        """Run the worker in the thread."""
        try:
            asyncio.run(worker.start())
        except KeyboardInterrupt:
            logger.info("Worker received keyboard interrupt")
        except Exception as e:
            logger.error(f"Worker crashed: {e}", exc_info=True)

    _worker_thread = threading.Thread(target=run_worker, name="plate-reader-scheduler", daemon=True)
    _worker_thread.start()

    logger.info("✅ Background worker started")
    return True


def stop_worker():
    """Stop the periodic trigger. A cycle already in progress runs to its end."""
    global _worker_stopped

    if _worker_instance and not _worker_stopped:
        logger.info("🛑 Stopping background worker...")
        _worker_instance.stop()
        _worker_stopped = True
        logger.info("✅ Background worker stopped")
    elif _worker_stopped:
        logger.debug("Worker already stopped, skipping")


def restart_worker() -> bool:
    """
    Restart the worker.

    Returns:
        True if worker was restarted successfully
    """
    logger.info("Restarting worker...")
    stop_worker()
    time.sleep(1)
    return start_worker()


def is_worker_running() -> bool:
    """Check if the periodic trigger is currently running."""
    if _worker_thread is not None and _worker_thread.is_alive() and not _worker_stopped:
        return True
    return _worker_instance is not None and _worker_instance.is_running


def get_worker_stats() -> dict:
    """Periodic trigger, lock and last cycle, as one status document."""
    stats = {
        "status": "running" if is_worker_running() else "stopped",
        "lock": processing_lock.snapshot(),
        "config": config.get_processing_config(),
    }
    if _worker_instance is None:
        stats["status"] = "not_started"
    else:
        stats.update(_worker_instance.get_status())

    if _scheduler is not None and _scheduler.last_report is not None:
        stats["last_cycle"] = _scheduler.last_report.model_dump()
    return stats


# Register cleanup function to stop worker on exit
atexit.register(stop_worker)
