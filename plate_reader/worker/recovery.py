"""
Crash recovery for photos left in 'processing' by a dead worker.
"""

import logging
from datetime import timedelta
from typing import Optional

from plate_reader.core.models import AuditNote
from plate_reader.worker.database import PhotoDatabase, utcnow

logger = logging.getLogger(__name__)

STALE_RESET_NOTE = "reset after stall"


class StaleSweeper:
    """Resets photos stuck in 'processing' past the staleness window back to 'pending'."""

    def __init__(self, photos: PhotoDatabase, stale_minutes: int = 10):
        self.photos = photos
        self.staleness = timedelta(minutes=stale_minutes)

    async def reset_stale(self, batch_id: str, staleness: Optional[timedelta] = None) -> int:
        """
        Reset orphaned in-flight photos of a batch.

        Safe to run at the start of every cycle: a photo that is still being worked on
        is refreshed by its owner and never looks stale.

        Args:
            batch_id: Batch to sweep
            staleness: Override of the configured staleness window

        Returns:
            Number of photos moved back to pending
        """
        window = staleness or self.staleness
        cutoff = utcnow() - window
        stale = await self.photos.find_stale(batch_id, cutoff)
        if not stale:
            return 0

        reset = 0
        for photo in stale:
            note = AuditNote(
                kind="stale_reset",
                message=f"{STALE_RESET_NOTE} (processing for more than {int(window.total_seconds() // 60)} min)",
                timestamp=utcnow(),
            )
            if await self.photos.reset_if_stale(photo, cutoff, note):
                reset += 1

        if reset:
            logger.warning(f"🔄 {reset} stalled photo(s) in batch {batch_id} reset to 'pending'")
        return reset
