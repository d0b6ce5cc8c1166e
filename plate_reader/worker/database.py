"""
Database operations for the plate reading worker.
Photo and batch record stores over the Supabase `photos` and `batches` tables.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Iterable, Set, Tuple
from supabase import Client

from plate_reader.core.models import (
    AuditNote,
    Batch,
    BatchStatus,
    BatchStatusCounts,
    ErrorDetail,
    Photo,
    PhotoStatus,
    StatusCounts,
    TERMINAL_PHOTO_STATUSES,
)

logger = logging.getLogger(__name__)

PHOTOS = "photos"
BATCHES = "batches"

# PostgREST caps a single response, so bulk reads are paged
READ_CHUNK = 1000
HASH_CHUNK = 100
MAX_ERROR_HISTORY = 10
MAX_BATCH_ERRORS = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(items: Iterable) -> List[Dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


class PhotoDatabase:
    """Photo record store."""

    def __init__(self, supabase_client: Client):
        """
        Initialize photo database operations.

        Args:
            supabase_client: Supabase client instance
        """
        self.client = supabase_client

    async def insert_many(self, rows: List[Dict[str, Any]]) -> int:
        """Insert new photo rows. Returns the number of rows written."""
        if not rows:
            return 0
        result = self.client.table(PHOTOS).insert(rows).execute()
        return len(result.data or [])

    async def existing_hashes(self, hashes: List[str]) -> Set[str]:
        """Subset of `hashes` already present on some photo."""
        found = set()
        for start in range(0, len(hashes), HASH_CHUNK):
            chunk = hashes[start:start + HASH_CHUNK]
            result = self.client.table(PHOTOS).select("hash").in_("hash", chunk).execute()
            found.update(row["hash"] for row in (result.data or []))
        return found

    async def get(self, photo_id: str) -> Optional[Photo]:
        result = self.client.table(PHOTOS).select("*").eq("id", photo_id).limit(1).execute()
        if result.data:
            return Photo.model_validate(result.data[0])
        return None

    async def fetch_pending(self, batch_id: str, limit: int = 10) -> List[Photo]:
        """
        Next page of pending photos of a batch, oldest import first.

        Args:
            batch_id: Batch to drain
            limit: Page size

        Returns:
            Pending photos in FIFO order
        """
        result = self.client.table(PHOTOS).select("*").eq(
            "batch_id", batch_id
        ).eq(
            "status", PhotoStatus.PENDING.value
        ).order(
            "imported_at", desc=False
        ).limit(limit).execute()

        return [Photo.model_validate(row) for row in (result.data or [])]

    async def claim(self, photo_id: str) -> Optional[Photo]:
        """
        Atomically claim a photo by moving it from pending to processing.
        Two workers racing on the same photo cannot both win: the update only
        matches while the status is still 'pending'.

        Returns:
            The claimed photo, or None if it was no longer pending
        """
        try:
            now = utcnow().isoformat()
            result = self.client.table(PHOTOS).update({
                "status": PhotoStatus.PROCESSING.value,
                "last_attempted_at": now,
                "updated_at": now,
            }).eq("id", photo_id).eq("status", PhotoStatus.PENDING.value).execute()

            if result.data:
                return Photo.model_validate(result.data[0])
            logger.debug(f"Photo {photo_id} already claimed or no longer pending")
            return None

        except Exception as e:
            logger.error(f"Error claiming photo {photo_id}: {e}")
            return None

    async def save(self, photo_id: str, fields: Dict[str, Any]) -> Optional[Photo]:
        """Persist one atomic update of a photo."""
        update_data = dict(fields)
        update_data["updated_at"] = utcnow().isoformat()
        result = self.client.table(PHOTOS).update(update_data).eq("id", photo_id).execute()
        if result.data:
            return Photo.model_validate(result.data[0])
        logger.error(f"Photo {photo_id} update matched no rows")
        return None

    async def find_stale(self, batch_id: str, cutoff: datetime) -> List[Photo]:
        """Photos of a batch stuck in processing since before `cutoff`."""
        result = self.client.table(PHOTOS).select("*").eq(
            "batch_id", batch_id
        ).eq(
            "status", PhotoStatus.PROCESSING.value
        ).lt(
            "updated_at", cutoff.isoformat()
        ).execute()
        return [Photo.model_validate(row) for row in (result.data or [])]

    async def reset_if_stale(self, photo: Photo, cutoff: datetime, note: AuditNote) -> bool:
        """
        Move a stale photo back to pending, appending an audit note.
        Matches only while the photo is still processing and still older than `cutoff`,
        so a photo that made progress in the meantime is left alone.
        """
        now = utcnow().isoformat()
        result = self.client.table(PHOTOS).update({
            "status": PhotoStatus.PENDING.value,
            "notes": _dump(photo.notes) + [note.model_dump(mode="json")],
            "updated_at": now,
        }).eq("id", photo.id).eq(
            "status", PhotoStatus.PROCESSING.value
        ).lt("updated_at", cutoff.isoformat()).execute()
        return bool(result.data)

    async def count_by_status(self, batch_id: Optional[str]) -> StatusCounts:
        """Grouped status count (and recognition cost) of a batch's photos, or of every photo when batch_id is None."""
        result = self.client.rpc("photo_status_counts", {"p_batch_id": batch_id}).execute()
        counts = {}
        cost = 0.0
        for row in result.data or []:
            counts[row["status"]] = int(row["count"])
            cost += float(row.get("cost") or 0.0)
        return StatusCounts(counts=counts, cost=round(cost, 6))

    async def list(
        self,
        batch_id: str,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Photo], int]:
        """One page of a batch's photos, optionally filtered by status, plus the total count."""
        query = self.client.table(PHOTOS).select("*", count="exact").eq("batch_id", batch_id)
        if status:
            query = query.eq("status", status)
        result = query.order("external_id", desc=False).range(offset, offset + limit - 1).execute()
        photos = [Photo.model_validate(row) for row in (result.data or [])]
        return photos, result.count or 0

    async def list_terminal(self, batch_id: str) -> List[Photo]:
        """Every photo of a batch in a terminal status, ordered by external id."""
        statuses = [status.value for status in TERMINAL_PHOTO_STATUSES]
        photos = []
        offset = 0
        while True:
            result = self.client.table(PHOTOS).select("*").eq(
                "batch_id", batch_id
            ).in_(
                "status", statuses
            ).order(
                "external_id", desc=False
            ).range(offset, offset + READ_CHUNK - 1).execute()

            rows = result.data or []
            photos.extend(Photo.model_validate(row) for row in rows)
            if len(rows) < READ_CHUNK:
                return photos
            offset += READ_CHUNK

    async def review_queue(self, batch_id: str, offset: int = 0, limit: int = 50) -> Tuple[List[Photo], int]:
        """Warning photos waiting for a human decision."""
        return await self.list(batch_id, PhotoStatus.WARNING.value, offset, limit)


class BatchDatabase:
    """Batch record store."""

    def __init__(self, supabase_client: Client):
        """
        Initialize batch database operations.

        Args:
            supabase_client: Supabase client instance
        """
        self.client = supabase_client

    def _one(self, result) -> Optional[Batch]:
        if result.data:
            return Batch.model_validate(result.data[0])
        return None

    async def create(self, fields: Dict[str, Any]) -> Batch:
        """Insert a batch. Unique violations on name or file hash propagate."""
        now = utcnow().isoformat()
        record = {"imported_at": now, "updated_at": now, **fields}
        result = self.client.table(BATCHES).insert(record).execute()
        batch = self._one(result)
        if batch is None:
            raise RuntimeError(f"Failed to create batch {fields.get('name')}")
        logger.info(f"Created batch {batch.name} ({batch.id})")
        return batch

    async def get(self, batch_id: str) -> Optional[Batch]:
        return self._one(self.client.table(BATCHES).select("*").eq("id", batch_id).limit(1).execute())

    async def get_by_name(self, name: str) -> Optional[Batch]:
        return self._one(self.client.table(BATCHES).select("*").eq("name", name).limit(1).execute())

    async def get_by_hash(self, file_hash: str) -> Optional[Batch]:
        return self._one(self.client.table(BATCHES).select("*").eq("file_hash", file_hash).limit(1).execute())

    async def next_for_processing(self) -> Optional[Batch]:
        """
        Oldest batch needing work. An interrupted batch (status processing) is
        always finished before a pending one is started.
        """
        for status in (BatchStatus.PROCESSING, BatchStatus.PENDING):
            result = self.client.table(BATCHES).select("*").eq(
                "status", status.value
            ).order(
                "imported_at", desc=False
            ).limit(1).execute()
            batch = self._one(result)
            if batch:
                return batch
        return None

    async def count_waiting(self) -> int:
        result = self.client.table(BATCHES).select("id", count="exact").in_(
            "status", [BatchStatus.PENDING.value, BatchStatus.PROCESSING.value]
        ).execute()
        return result.count or 0

    async def count_by_status(self) -> BatchStatusCounts:
        """Grouped batch counts with summed actual and estimated cost."""
        result = self.client.rpc("batch_status_counts", {}).execute()
        counts = {}
        actual = 0.0
        estimated = 0.0
        for row in result.data or []:
            counts[row["status"]] = int(row["count"])
            actual += float(row.get("actual_cost") or 0.0)
            estimated += float(row.get("estimated_cost") or 0.0)
        return BatchStatusCounts(counts=counts, actual_cost=round(actual, 6), estimated_cost=round(estimated, 6))

    async def update(self, batch_id: str, fields: Dict[str, Any]) -> Optional[Batch]:
        update_data = dict(fields)
        update_data["updated_at"] = utcnow().isoformat()
        result = self.client.table(BATCHES).update(update_data).eq("id", batch_id).execute()
        batch = self._one(result)
        if batch is None:
            logger.error(f"Batch {batch_id} update matched no rows")
        return batch

    async def mark_processing(self, batch: Batch) -> Batch:
        fields = {"status": BatchStatus.PROCESSING.value}
        if batch.started_at is None:
            fields["started_at"] = utcnow().isoformat()
        return await self.update(batch.id, fields) or batch

    async def finalize(self, batch: Batch, counts: StatusCounts, concluded: bool) -> Batch:
        """
        Recompute aggregates from the authoritative photo counts and, when nothing
        is left pending or processing, conclude the batch.
        """
        fields: Dict[str, Any] = dict(counts.aggregate_fields())
        fields["actual_cost"] = counts.cost

        if concluded:
            now = utcnow()
            fields["status"] = BatchStatus.CONCLUDED.value
            fields["concluded_at"] = now.isoformat()
            started_at = batch.started_at or now
            total_seconds = max((now - started_at).total_seconds(), 0.0)
            fields["total_duration_seconds"] = round(total_seconds, 3)
            if counts.total > 0:
                fields["average_duration_seconds"] = round(total_seconds / counts.total, 3)

        return await self.update(batch.id, fields) or batch

    async def record_error(
        self,
        batch: Batch,
        message: str,
        kind: str = "unknown",
        status: Optional[BatchStatus] = BatchStatus.ERROR,
    ) -> Optional[Batch]:
        """Append to the batch's bounded error log; by default also moves it to status error."""
        detail = ErrorDetail(message=message, timestamp=utcnow(), kind=kind)
        errors = (list(batch.errors) + [detail])[-MAX_BATCH_ERRORS:]
        fields: Dict[str, Any] = {"errors": _dump(errors)}
        if status is not None:
            fields["status"] = status.value
            fields["last_error"] = detail.model_dump(mode="json")
        return await self.update(batch.id, fields)

    async def list(
        self,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Batch], int]:
        """One page of batches, newest import first, plus the total count."""
        query = self.client.table(BATCHES).select("*", count="exact")
        if status:
            query = query.eq("status", status)
        result = query.order("imported_at", desc=True).range(offset, offset + limit - 1).execute()
        batches = [Batch.model_validate(row) for row in (result.data or [])]
        return batches, result.count or 0
