"""
Processing orchestrator for the plate reading worker.
Runs one photo through claim -> download -> extraction -> record update.
"""

import time
import logging
from typing import Dict, Any, Optional

from plate_reader.core.config import Config
from plate_reader.core.errors import PlateReaderError, RecognitionServiceError, SourceResolutionError
from plate_reader.core.extraction import NumberExtractor
from plate_reader.core.models import (
    AuditNote,
    ErrorDetail,
    ExtractionOutcome,
    ExtractionResult,
    Photo,
    PhotoStatus,
    ProcessResult,
)
from plate_reader.worker.database import PhotoDatabase, MAX_ERROR_HISTORY, utcnow
from plate_reader.worker.storage import PhotoStorage

logger = logging.getLogger(__name__)

SKIPPED = "skipped"

_OUTCOME_STATUS = {
    ExtractionOutcome.SUCCESS: PhotoStatus.SUCCESS,
    ExtractionOutcome.WARNING: PhotoStatus.WARNING,
    ExtractionOutcome.FAILURE: PhotoStatus.FAILURE,
}


def _error_kind(error: Exception, default: str) -> str:
    if isinstance(error, PlateReaderError):
        return error.kind
    return default


class PhotoProcessor:
    """Orchestrates the complete processing pipeline for a single photo."""

    def __init__(
        self,
        photos: PhotoDatabase,
        storage: PhotoStorage,
        extractor: NumberExtractor,
        config: Optional[Config] = None,
    ):
        """
        Initialize the photo processor.

        Args:
            photos: Photo record store
            storage: Source resolution and download
            extractor: Number extractor
            config: Service configuration
        """
        self.photos = photos
        self.storage = storage
        self.extractor = extractor
        self.config = config or Config()

    async def process_photo(self, photo: Photo, digit_length: Optional[int] = None) -> ProcessResult:
        """
        Process a single photo to a per-attempt terminal state.

        Never raises: every path ends in a persisted status, except when the store
        itself is unreachable, in which case the photo stays 'processing' and is
        picked up again by the stale sweeper.

        Retry policy: source and download problems are infrastructure faults and
        end in status 'error' without consuming an attempt. Unexpected errors
        during recognition or persistence consume one attempt; the photo goes back
        to 'pending' until max attempts is reached, then to 'failure'.

        Args:
            photo: Pending photo record
            digit_length: Expected number length (defaults to config)

        Returns:
            ProcessResult with the resulting status (or 'skipped' if the claim was lost)
        """
        digit_length = digit_length or self.config.digit_length

        claimed = await self.photos.claim(photo.id)
        if claimed is None:
            logger.debug(f"Skipping photo {photo.external_id}: not claimable")
            return ProcessResult(outcome=SKIPPED, photo=photo)
        photo = claimed

        start = time.monotonic()
        logger.info(f"🔄 Processing photo {photo.external_id} (attempt {photo.attempts + 1}/{photo.max_attempts})")

        # Step 1: Resolve source
        try:
            source = self.storage.resolve_source(photo)
        except SourceResolutionError as e:
            logger.error(f"❌ {photo.external_id}: {e.message}")
            return await self._mark_error(photo, e, e.kind, start)

        # Step 2: Download
        try:
            content = await self.storage.fetch(source)
        except Exception as e:
            logger.error(f"❌ Download failed for {photo.external_id}: {e}")
            return await self._mark_error(photo, e, _error_kind(e, "fetch"), start, note_kind="download_error")

        # Steps 3-5: Extract, map, persist
        try:
            result = await self.extractor.extract(content, digit_length)
            if result.service_error:
                raise RecognitionServiceError(result.reason)

            fields = self._result_fields(result, len(content), start)
            saved = await self.photos.save(photo.id, fields)
            if saved is None:
                raise RuntimeError(f"Failed to persist result for photo {photo.id}")

            self._log_outcome(saved, result)
            return ProcessResult(outcome=saved.status.value, photo=saved)

        except Exception as e:
            logger.error(f"❌ Unexpected error processing {photo.external_id}: {e}", exc_info=True)
            return await self._schedule_retry(photo, e, start)

    def _result_fields(self, result: ExtractionResult, image_size: int, start: float) -> Dict[str, Any]:
        status = _OUTCOME_STATUS[result.outcome]
        fields: Dict[str, Any] = {
            "status": status.value,
            "detected_number": str(result.number or ""),
            "confidence": result.confidence,
            "reason": result.reason,
            "requires_review": status == PhotoStatus.WARNING,
            "alternatives": [c.model_dump() for c in result.alternatives] if status == PhotoStatus.WARNING else [],
            "cost": self.config.cost_per_photo,
            "image_size": image_size,
            "duration_ms": int((time.monotonic() - start) * 1000),
        }
        if status == PhotoStatus.SUCCESS:
            fields["succeeded_at"] = utcnow().isoformat()
            fields["last_error"] = None
        return fields

    def _log_outcome(self, photo: Photo, result: ExtractionResult):
        if photo.status == PhotoStatus.SUCCESS:
            logger.info(f"✅ {photo.external_id}: {photo.detected_number} ({photo.confidence}%)")
        elif photo.status == PhotoStatus.WARNING:
            alternatives = ", ".join(f"{c.text} ({c.confidence}%)" for c in result.alternatives)
            logger.warning(f"⚠️ {photo.external_id}: {result.reason}. Alternatives: {alternatives}")
        else:
            logger.warning(f"❌ {photo.external_id}: {result.reason}")

    def _error_fields(self, photo: Photo, error: Exception, kind: str, attempt: Optional[int] = None) -> Dict[str, Any]:
        message = error.message if isinstance(error, PlateReaderError) else str(error)
        detail = ErrorDetail(message=message, timestamp=utcnow(), kind=kind, attempt=attempt)
        history = (list(photo.error_history) + [detail])[-MAX_ERROR_HISTORY:]
        return {
            "last_error": detail.model_dump(mode="json"),
            "error_history": [item.model_dump(mode="json") for item in history],
            "reason": message,
        }

    async def _persist_failure_path(self, photo: Photo, fields: Dict[str, Any], outcome: str) -> ProcessResult:
        try:
            saved = await self.photos.save(photo.id, fields)
        except Exception as e:
            logger.error(f"Failed to persist {outcome} state for photo {photo.id}: {e}")
            saved = None
        return ProcessResult(outcome=outcome, photo=saved or photo)

    async def _mark_error(
        self,
        photo: Photo,
        error: Exception,
        kind: str,
        start: float,
        note_kind: Optional[str] = None,
    ) -> ProcessResult:
        """Terminal 'error' for data-integrity and download faults. Attempts are untouched."""
        fields = self._error_fields(photo, error, kind)
        fields["status"] = PhotoStatus.ERROR.value
        fields["duration_ms"] = int((time.monotonic() - start) * 1000)
        if note_kind:
            note = AuditNote(kind=note_kind, message=fields["reason"], timestamp=utcnow())
            fields["notes"] = [n.model_dump(mode="json") for n in photo.notes] + [note.model_dump(mode="json")]
        return await self._persist_failure_path(photo, fields, PhotoStatus.ERROR.value)

    async def _schedule_retry(self, photo: Photo, error: Exception, start: float) -> ProcessResult:
        """Consume one attempt; back to pending, or terminal failure once attempts are exhausted."""
        max_attempts = photo.max_attempts or self.config.max_attempts
        attempts = photo.attempts + 1

        if attempts >= max_attempts:
            status = PhotoStatus.FAILURE
            logger.error(f"❌ {photo.external_id}: failed after {attempts} attempts - {error}")
        else:
            status = PhotoStatus.PENDING
            logger.warning(f"⚠️ {photo.external_id}: attempt {attempts}/{max_attempts} failed - {error}")

        fields = self._error_fields(photo, error, _error_kind(error, "processing"), attempt=attempts)
        fields["attempts"] = attempts
        fields["status"] = status.value
        fields["duration_ms"] = int((time.monotonic() - start) * 1000)
        return await self._persist_failure_path(photo, fields, status.value)
