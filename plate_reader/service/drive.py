"""
Google Drive access (service account, read-only): photo downloads and batch spreadsheet listing.
"""

import asyncio
import io
import json
import logging
from typing import Any, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload

from plate_reader.core.config import Config
from plate_reader.core.errors import FetchError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]

SPREADSHEET_MIME_TYPES = (
    "text/csv",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)
RESULT_SUFFIX = "_results"


class DriveDownloader:
    """Downloads files from Google Drive by file id."""

    def __init__(self, config: Optional[Config] = None, service=None):
        self.config = config or Config()
        self._service = service

    def _build_service(self):
        if self.config.google_credentials_json:
            info = json.loads(self.config.google_credentials_json)
            credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
        elif self.config.google_credentials_path:
            credentials = service_account.Credentials.from_service_account_file(
                self.config.google_credentials_path, scopes=SCOPES
            )
        else:
            raise FetchError("Google Drive credentials are not configured")
        return build("drive", "v3", credentials=credentials, cache_discovery=False)

    @property
    def service(self):
        if self._service is None:
            self._service = self._build_service()
            logger.info("✅ Google Drive client initialized")
        return self._service

    def _download(self, file_id: str) -> bytes:
        request = self.service.files().get_media(fileId=file_id)
        buffer = io.BytesIO()
        downloader = MediaIoBaseDownload(buffer, request)
        done = False
        while not done:
            _, done = downloader.next_chunk()
        return buffer.getvalue()

    async def download(self, file_id: str) -> bytes:
        """
        Download a Drive file's content.

        Raises:
            FetchError: on API errors or an empty file
        """
        logger.debug(f"📥 Downloading from Drive: {file_id}")
        try:
            content = await asyncio.to_thread(self._download, file_id)
        except FetchError:
            raise
        except HttpError as e:
            raise FetchError(f"Drive download failed for {file_id}: {e}")
        except OSError as e:
            raise FetchError(f"Drive transport error for {file_id}: {e}")

        if not content:
            raise FetchError(f"Empty Drive file: {file_id}")
        return content

    def _list_spreadsheets(self, folder_id: str) -> List[Dict[str, Any]]:
        mime_filter = " or ".join(f"mimeType='{mime}'" for mime in SPREADSHEET_MIME_TYPES)
        query = (
            f"'{folder_id}' in parents and ({mime_filter}) and trashed=false "
            f"and not name contains '{RESULT_SUFFIX}'"
        )
        files = []
        page_token = None
        while True:
            response = self.service.files().list(
                q=query,
                fields="nextPageToken, files(id, name, mimeType, size, createdTime)",
                orderBy="createdTime",
                pageSize=100,
                pageToken=page_token,
            ).execute()
            files.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return files

    async def list_spreadsheets(self, folder_id: str) -> List[Dict[str, Any]]:
        """
        CSV and XLSX files of a Drive folder, oldest first.

        Returns:
            Drive file resources with id, name, mimeType, size and createdTime

        Raises:
            FetchError: on API errors
        """
        try:
            files = await asyncio.to_thread(self._list_spreadsheets, folder_id)
        except FetchError:
            raise
        except HttpError as e:
            raise FetchError(f"Drive listing failed for folder {folder_id}: {e}")
        except OSError as e:
            raise FetchError(f"Drive transport error listing folder {folder_id}: {e}")

        logger.info(f"📂 {len(files)} spreadsheet(s) in Drive folder {folder_id}")
        return files
