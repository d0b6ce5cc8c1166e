from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from typing import Optional
import logging

from ..core.errors import BatchNotFoundError, BatchStateError, DuplicateBatchError
from ..core.export import render_csv, statistics_snapshot, status_snapshot
from ..core.models import Batch, BatchStatus, PhotoStatus
from ..worker import manager
from ..worker.database import BatchDatabase, PhotoDatabase
from ..worker.importer import BatchImporter
from ..worker.scheduler import BatchScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


def get_photo_store() -> PhotoDatabase:
    return PhotoDatabase(manager.get_client())


def get_batch_store() -> BatchDatabase:
    return BatchDatabase(manager.get_client())


def get_importer() -> BatchImporter:
    return manager.get_importer()


def get_scheduler() -> BatchScheduler:
    return manager.get_scheduler()


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "totalPages": (total + limit - 1) // limit,
        "totalRecords": total,
        "perPage": limit,
    }


async def _require_batch(batches: BatchDatabase, name: str) -> Batch:
    batch = await batches.get_by_name(name)
    if batch is None:
        raise BatchNotFoundError(f"Batch {name} not found")
    return batch


def _validate_photo_status(status: Optional[str]):
    if status is None:
        return
    valid = [s.value for s in PhotoStatus]
    if status not in valid:
        raise HTTPException(status_code=400, detail=f"Invalid status {status!r}. Expected one of: {', '.join(valid)}")


@router.get("/batches")
async def list_batches(
    status: Optional[str] = Query(None, description="Filter by batch status"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Number of records per page"),
    batches: BatchDatabase = Depends(get_batch_store),
):
    """List batches, newest import first."""
    if status is not None and status not in [s.value for s in BatchStatus]:
        raise HTTPException(status_code=400, detail=f"Invalid batch status {status!r}")

    offset = (page - 1) * limit
    items, total = await batches.list(status, offset, limit)
    return {
        "batches": [status_snapshot(batch) for batch in items],
        "pagination": _pagination(page, limit, total),
    }


@router.get("/statistics")
async def statistics(
    batches: BatchDatabase = Depends(get_batch_store),
    photos: PhotoDatabase = Depends(get_photo_store),
):
    """Batch and photo counts per status, success rate, costs and the latest imports."""
    batch_counts = await batches.count_by_status()
    photo_counts = await photos.count_by_status(None)
    latest, _ = await batches.list(None, 0, 5)
    return statistics_snapshot(batch_counts, photo_counts, latest)


@router.post("/batches/import")
async def import_batch(
    file: UploadFile = File(..., description="Spreadsheet (CSV or XLSX) listing the photos"),
    name: Optional[str] = Form(None, description="Batch name (defaults to the file name)"),
    source_file_id: Optional[str] = Form(None, description="Reference of the file in its origin"),
    importer: BatchImporter = Depends(get_importer),
):
    """
    Import a spreadsheet as a new batch of pending photos.
    Returns 409 when the same file (by content hash) was already imported.
    """
    content = await file.read()
    report = await importer.import_batch(
        content,
        file.filename or "",
        name=name,
        source_file_id=source_file_id,
    )

    if not report.created:
        raise DuplicateBatchError(
            f"File already imported as batch {report.batch.name}",
            existing_name=report.batch.name,
        )

    logger.info(f"Batch {report.batch.name} imported via API ({report.imported} photos)")
    return JSONResponse(status_code=201, content=report.model_dump(mode="json"))


@router.get("/batches/{name}/status")
async def batch_status(name: str, batches: BatchDatabase = Depends(get_batch_store)):
    """Aggregate snapshot of a batch with derived percentages and elapsed time."""
    batch = await _require_batch(batches, name)
    return status_snapshot(batch)


@router.get("/batches/{name}/export")
async def export_batch(
    name: str,
    batches: BatchDatabase = Depends(get_batch_store),
    photos: PhotoDatabase = Depends(get_photo_store),
):
    """Results CSV of every photo of the batch in a terminal status."""
    batch = await _require_batch(batches, name)
    rows = await photos.list_terminal(batch.id)
    content = render_csv(rows)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{batch.name}_results.csv"'},
    )


@router.get("/batches/{name}/photos")
async def list_photos(
    name: str,
    status: Optional[str] = Query(None, description="Filter by photo status"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=500, description="Number of records per page"),
    batches: BatchDatabase = Depends(get_batch_store),
    photos: PhotoDatabase = Depends(get_photo_store),
):
    """Photos of a batch, ordered by external id."""
    _validate_photo_status(status)
    batch = await _require_batch(batches, name)
    offset = (page - 1) * limit
    items, total = await photos.list(batch.id, status, offset, limit)
    return {
        "batch": batch.name,
        "photos": [photo.model_dump(mode="json") for photo in items],
        "pagination": _pagination(page, limit, total),
    }


@router.get("/batches/{name}/review")
async def review_queue(
    name: str,
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(50, ge=1, le=500, description="Number of records per page"),
    batches: BatchDatabase = Depends(get_batch_store),
    photos: PhotoDatabase = Depends(get_photo_store),
):
    """Photos with several candidate numbers, waiting for a human decision."""
    batch = await _require_batch(batches, name)
    offset = (page - 1) * limit
    items, total = await photos.review_queue(batch.id, offset, limit)
    return {
        "batch": batch.name,
        "photos": [
            {
                "id": photo.external_id,
                "photo_link": photo.location_label,
                "detected_number": photo.detected_number,
                "confidence": photo.confidence,
                "alternatives": [candidate.model_dump() for candidate in photo.alternatives],
                "reason": photo.reason,
            }
            for photo in items
        ],
        "pagination": _pagination(page, limit, total),
    }


@router.post("/batches/{name}/process")
async def process_batch(
    name: str,
    background_tasks: BackgroundTasks,
    batches: BatchDatabase = Depends(get_batch_store),
    scheduler: BatchScheduler = Depends(get_scheduler),
):
    """
    Start processing a batch's backlog in the background.
    400 when the batch is already processing or concluded. Nothing is started
    while another cycle holds the lock; the batch stays pending for a later cycle.
    """
    batch = await _require_batch(batches, name)
    if batch.status in (BatchStatus.PROCESSING, BatchStatus.CONCLUDED, BatchStatus.IMPORTING):
        raise BatchStateError(f"Batch {name} is already {batch.status.value}")

    if scheduler.lock.running:
        logger.info(f"Processing of batch {batch.name} requested while a cycle is running, not started")
        return {
            "message": f"Another processing cycle is running; batch {batch.name} was not started",
            "batch": batch.name,
            "status": "cycle_in_progress",
            "elapsed_seconds": round(scheduler.lock.elapsed_seconds(), 1),
        }

    background_tasks.add_task(scheduler.run_pending_batches, batch.name)
    logger.info(f"Processing of batch {batch.name} requested via API")
    return {
        "message": f"Processing of batch {batch.name} started",
        "batch": batch.name,
        "status": "processing_started",
    }
