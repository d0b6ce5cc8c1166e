"""
Automatic ingestion of batch spreadsheets dropped in a Google Drive folder.
"""

import re
import logging
from typing import Optional

from plate_reader.core.errors import DuplicateBatchError, FetchError, ImportValidationError
from plate_reader.core.models import BatchStatus, ImportReport
from plate_reader.worker.database import BatchDatabase
from plate_reader.worker.importer import BatchImporter, batch_name_from_file

logger = logging.getLogger(__name__)


class DriveIngester:
    """Imports the oldest spreadsheet of a Drive folder that has no batch yet."""

    def __init__(
        self,
        drive,
        importer: BatchImporter,
        batches: BatchDatabase,
        folder_id: str,
        file_pattern: Optional[str] = None,
    ):
        """
        Initialize the ingester.

        Args:
            drive: Object with `list_spreadsheets(folder_id)` and `download(file_id)`
            importer: Batch importer
            batches: Batch record store
            folder_id: Drive folder watched for new spreadsheets
            file_pattern: Optional regex a file name must match to be imported
        """
        self.drive = drive
        self.importer = importer
        self.batches = batches
        self.folder_id = folder_id
        self.file_pattern = re.compile(file_pattern, re.IGNORECASE) if file_pattern else None

    async def _already_imported(self, file_name: str) -> bool:
        try:
            name = batch_name_from_file(file_name)
        except ImportValidationError:
            return True
        batch = await self.batches.get_by_name(name)
        # Interrupted imports are handed back to the importer, which resumes them
        return batch is not None and batch.status not in (BatchStatus.ERROR, BatchStatus.IMPORTING)

    async def import_next(self) -> Optional[ImportReport]:
        """
        Import at most one new spreadsheet from the folder, oldest first.

        Files that fail validation are logged and skipped so one broken sheet does
        not block the ones after it.

        Returns:
            The import report of the new batch, or None when nothing new was found
        """
        files = await self.drive.list_spreadsheets(self.folder_id)

        for item in files:
            file_name = item.get("name") or ""
            if self.file_pattern and not self.file_pattern.search(file_name):
                logger.debug(f"Skipping {file_name}: does not match the batch file pattern")
                continue
            if await self._already_imported(file_name):
                logger.debug(f"⏭️ {file_name} already imported")
                continue

            logger.info(f"📥 New spreadsheet found in Drive: {file_name}")
            try:
                content = await self.drive.download(item["id"])
                report = await self.importer.import_batch(content, file_name, source_file_id=item["id"])
            except (ImportValidationError, DuplicateBatchError, FetchError) as e:
                logger.warning(f"⚠️ Could not import {file_name}: {e}")
                continue

            if report.created:
                return report

        logger.info("ℹ️ No new spreadsheets in Drive")
        return None
