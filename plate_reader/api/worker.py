from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
import logging

from ..worker import manager
from ..worker.scheduler import BatchScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


def get_scheduler() -> BatchScheduler:
    return manager.get_scheduler()


@router.get("/worker/status")
async def worker_status():
    """Periodic trigger state, single-flight lock and last cycle report."""
    try:
        return manager.get_worker_stats()
    except Exception as e:
        logger.error(f"Error getting worker status: {e}")
        return {
            "status": "error",
            "error": str(e)
        }


@router.post("/worker/run")
async def run_cycle(
    background_tasks: BackgroundTasks,
    wait: bool = Query(True, description="Wait for the cycle to finish and return its report"),
    scheduler: BatchScheduler = Depends(get_scheduler),
):
    """Run one scheduling cycle now."""
    if not wait:
        if scheduler.lock.running:
            return {"already_in_progress": True, "elapsed_seconds": round(scheduler.lock.elapsed_seconds(), 1)}
        background_tasks.add_task(scheduler.run_pending_batches)
        return {"message": "Processing cycle started", "status": "started"}

    report = await scheduler.run_pending_batches()
    return report.model_dump()


@router.post("/worker/start")
async def start_worker():
    """Start the periodic trigger (if not already running)."""
    try:
        success = manager.start_worker()

        if success:
            return {
                "message": "Worker started successfully",
                "status": "started"
            }
        else:
            return {
                "message": "Worker is already running",
                "status": "already_running"
            }

    except Exception as e:
        logger.error(f"Error starting worker: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to start worker: {str(e)}"
        )


@router.post("/worker/stop")
async def stop_worker():
    """Stop the periodic trigger. A cycle in progress runs to its end."""
    try:
        manager.stop_worker()

        return {
            "message": "Worker stopped successfully",
            "status": "stopped"
        }

    except Exception as e:
        logger.error(f"Error stopping worker: {e}")
        raise HTTPException(
            status_code=500,
            detail=f"Failed to stop worker: {str(e)}"
        )
