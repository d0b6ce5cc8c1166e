"""
Results CSV export, batch status snapshots and global statistics.
"""

import csv
import io
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from plate_reader.core.models import (
    Batch,
    BatchStatus,
    BatchStatusCounts,
    Photo,
    PhotoStatus,
    StatusCounts,
    TERMINAL_PHOTO_STATUSES,
)

EXPORT_COLUMNS = ["id", "photo_link", "detected_number", "confidence", "failed"]


def format_confidence(confidence: Optional[float]) -> str:
    if confidence is None:
        return ""
    return f"{confidence:.2f}"


def export_row(photo: Photo) -> list:
    return [
        photo.external_id,
        photo.location_label,
        str(photo.detected_number or ""),
        format_confidence(photo.confidence),
        "false" if photo.status == PhotoStatus.SUCCESS else "true",
    ]


def render_csv(photos: Iterable[Photo]) -> str:
    """Render terminal photos as the results CSV. detected_number is always written as text."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for photo in photos:
        if photo.status not in TERMINAL_PHOTO_STATUSES:
            continue
        writer.writerow(export_row(photo))
    return buffer.getvalue()


def _percentage(part: int, total: int) -> float:
    if not total:
        return 0.0
    return round(part / total * 100, 2)


def status_snapshot(batch: Batch, now: Optional[datetime] = None) -> dict:
    """Batch aggregates plus derived percentages and elapsed processing time."""
    now = now or datetime.now(timezone.utc)
    snapshot = batch.model_dump(mode="json", exclude={"errors"})
    total = batch.total_photos
    snapshot["success_percentage"] = _percentage(batch.success_photos, total)
    snapshot["failure_percentage"] = _percentage(batch.failure_photos, total)
    snapshot["completed_percentage"] = _percentage(batch.success_photos + batch.failure_photos, total)

    elapsed = None
    if batch.started_at is not None:
        end = batch.concluded_at or now
        elapsed = round(max((end - batch.started_at).total_seconds(), 0.0), 1)
    snapshot["elapsed_seconds"] = elapsed
    return snapshot


def statistics_snapshot(
    batch_counts: BatchStatusCounts,
    photo_counts: StatusCounts,
    latest: List[Batch],
) -> dict:
    """
    Service-wide statistics: batches and photos per status, success rate and costs.

    Savings is the estimated cost minus the cost actually charged, which is lower
    whenever photos end without a recognition call.
    """
    batches = {status.value: batch_counts.get(status) for status in BatchStatus}
    batches["total"] = batch_counts.total

    photos = {status.value: photo_counts.get(status) for status in PhotoStatus}
    photos["total"] = photo_counts.total
    photos["success_rate"] = _percentage(photo_counts.get(PhotoStatus.SUCCESS), photo_counts.total)

    return {
        "batches": batches,
        "photos": photos,
        "costs": {
            "actual": round(batch_counts.actual_cost, 4),
            "estimated": round(batch_counts.estimated_cost, 4),
            "savings": round(batch_counts.estimated_cost - batch_counts.actual_cost, 4),
        },
        "latest_batches": [
            {
                "name": batch.name,
                "status": batch.status.value,
                "total_photos": batch.total_photos,
                "success_photos": batch.success_photos,
                "imported_at": batch.imported_at.isoformat() if batch.imported_at else None,
            }
            for batch in latest
        ],
    }
