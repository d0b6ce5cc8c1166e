"""
Batch import pipeline.
Turns an uploaded spreadsheet into a batch of pending photos, skipping files and rows seen before.
"""

import os
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from plate_reader.core.config import Config
from plate_reader.core.errors import DuplicateBatchError, ImportValidationError
from plate_reader.core.models import Batch, BatchStatus, ImportReport, PhotoStatus
from plate_reader.core.spreadsheet import classify_link, content_hash, parse_rows, photo_hash
from plate_reader.worker.database import BatchDatabase, PhotoDatabase, HASH_CHUNK, utcnow

logger = logging.getLogger(__name__)

IMPORT_ERROR_KIND = "import"

_SOURCE_COLUMNS = {
    "drive": "drive_file_id",
    "ftp": "ftp_path",
    "http": "http_url",
}


def batch_name_from_file(file_name: str) -> str:
    """Batch name for an uploaded file: its base name without extension."""
    name = os.path.splitext(os.path.basename(file_name or ""))[0].strip()
    if not name:
        raise ImportValidationError(f"Cannot derive a batch name from file name {file_name!r}")
    return name


class BatchImporter:
    """Creates batches and their photo rows from spreadsheet bytes."""

    def __init__(self, photos: PhotoDatabase, batches: BatchDatabase, config: Optional[Config] = None):
        self.photos = photos
        self.batches = batches
        self.config = config or Config()

    async def import_batch(
        self,
        content: bytes,
        file_name: str,
        name: Optional[str] = None,
        source_file_id: Optional[str] = None,
    ) -> ImportReport:
        """
        Import one spreadsheet (CSV or XLSX).

        Re-importing a file whose content hash is already known is a no-op: the
        existing batch is returned with `created=False`. The exception is a batch
        whose import never completed (import error, or stuck in 'importing'):
        its rows are written again into the same batch, skipping those already stored.

        Args:
            content: Raw spreadsheet bytes
            file_name: Original file name, used for the batch name and the format
            name: Explicit batch name
            source_file_id: Reference of the file in its origin (e.g. a Drive id)

        Returns:
            ImportReport with counts of imported, duplicate and invalid rows

        Raises:
            ImportValidationError: unreadable spreadsheet or missing columns
            DuplicateBatchError: another batch already uses this name
        """
        if not content:
            raise ImportValidationError("Uploaded file is empty")

        file_hash = content_hash(content)
        existing = await self.batches.get_by_hash(file_hash)
        if existing is not None:
            if not self._import_interrupted(existing):
                logger.info(f"⏭️ {file_name} already imported as batch {existing.name}, skipping")
                return ImportReport(batch=existing, created=False)

            rows = parse_rows(content, file_name)
            logger.warning(f"🔄 Resuming interrupted import of batch {existing.name} ({existing.status.value})")
            batch = await self.batches.update(existing.id, {"status": BatchStatus.IMPORTING.value}) or existing
            return await self._populate(batch, rows, resumed=True)

        rows = parse_rows(content, file_name)
        batch_name = name or batch_name_from_file(file_name)
        if await self.batches.get_by_name(batch_name) is not None:
            raise DuplicateBatchError(f"Batch {batch_name} already exists", existing_name=batch_name)

        try:
            batch = await self.batches.create({
                "name": batch_name,
                "source_file_id": source_file_id,
                "source_file_name": file_name,
                "file_hash": file_hash,
                "file_size": len(content),
                "digit_length": self.config.digit_length,
                "status": BatchStatus.IMPORTING.value,
                "total_photos": len(rows),
            })
        except Exception as e:
            if "duplicate key" in str(e):
                raise DuplicateBatchError(f"Batch {batch_name} was imported concurrently", existing_name=batch_name)
            raise

        return await self._populate(batch, rows)

    def _import_interrupted(self, batch: Batch) -> bool:
        """A batch whose photo rows were never fully written."""
        if batch.status == BatchStatus.ERROR:
            return batch.last_error is not None and batch.last_error.kind == IMPORT_ERROR_KIND
        if batch.status == BatchStatus.IMPORTING:
            # Every written chunk refreshes updated_at, so a live import never looks stale
            cutoff = utcnow() - timedelta(minutes=self.config.stale_minutes)
            return batch.updated_at is None or batch.updated_at < cutoff
        return False

    async def _populate(self, batch: Batch, rows: List[Dict[str, str]], resumed: bool = False) -> ImportReport:
        already = (await self.photos.count_by_status(batch.id)).total if resumed else 0

        logger.info(f"📥 Importing {len(rows)} rows into batch {batch.name}")
        try:
            imported, duplicates, invalid = await self._write_photos(batch, rows, already)
        except Exception as e:
            logger.error(f"❌ Import of batch {batch.name} failed: {e}", exc_info=True)
            await self.batches.record_error(batch, f"Import failed: {e}", kind=IMPORT_ERROR_KIND)
            raise

        # Rows stored by the interrupted attempt are not duplicates of other batches
        duplicates = max(duplicates - already, 0)
        total = already + imported
        batch = await self.batches.update(batch.id, {
            "status": BatchStatus.PENDING.value,
            "total_photos": total,
            "imported_photos": total,
            "pending_photos": total,
            "estimated_cost": round(total * self.config.cost_per_photo, 6),
            "last_error": None,
        }) or batch

        if duplicates or invalid:
            notice = f"{duplicates} duplicate and {invalid} invalid rows skipped during import"
            logger.warning(f"⚠️ {batch.name}: {notice}")
            batch = await self.batches.record_error(batch, notice, kind="import_notice", status=None) or batch

        logger.info(f"✅ Batch {batch.name} imported: {total} photos")
        return ImportReport(
            batch=batch,
            created=True,
            resumed=resumed,
            imported=imported,
            duplicates=duplicates,
            invalid=invalid,
        )

    def _photo_records(self, batch: Batch, rows: List[Dict[str, str]]) -> Tuple[List[Dict[str, Any]], int, int]:
        """Rows to insert, deduplicated within the file, plus duplicate and invalid counts."""
        records = []
        seen = set()
        duplicates = 0
        invalid = 0
        base_time = utcnow()

        for row in rows:
            external_id = (row.get("external_id") or "").strip()
            link = row.get("link") or ""
            kind, value, normalized = classify_link(link, self.config.photo_source)
            if not external_id or kind is None:
                logger.debug(f"Skipping invalid row: id={external_id!r} link={link!r}")
                invalid += 1
                continue

            row_hash = photo_hash(external_id, normalized)
            if row_hash in seen:
                duplicates += 1
                continue
            seen.add(row_hash)

            record = {
                "batch_id": batch.id,
                "batch_name": batch.name,
                "external_id": external_id,
                "original_link": link.strip(),
                "source_kind": kind,
                "hash": row_hash,
                "status": PhotoStatus.PENDING.value,
                "attempts": 0,
                "max_attempts": self.config.max_attempts,
                # Spreadsheet order is the processing order
                "imported_at": (base_time + timedelta(microseconds=len(records))).isoformat(),
            }
            record[_SOURCE_COLUMNS[kind]] = value
            records.append(record)

        return records, duplicates, invalid

    async def _write_photos(
        self, batch: Batch, rows: List[Dict[str, str]], already: int = 0
    ) -> Tuple[int, int, int]:
        records, duplicates, invalid = self._photo_records(batch, rows)

        imported = 0
        for start in range(0, len(records), HASH_CHUNK):
            chunk = records[start:start + HASH_CHUNK]
            known = await self.photos.existing_hashes([record["hash"] for record in chunk])
            fresh = [record for record in chunk if record["hash"] not in known]
            duplicates += len(chunk) - len(fresh)

            imported += await self.photos.insert_many(fresh)
            await self.batches.update(batch.id, {"imported_photos": already + imported})
            logger.info(f"📊 {batch.name}: {imported} photos imported")

        return imported, duplicates, invalid
