"""
Storage operations for the plate reading worker.
Resolves a photo's tagged source location and downloads its bytes from Drive, FTP or HTTP.
"""

import logging
from typing import Optional, Union

from plate_reader.core.config import Config
from plate_reader.core.errors import FetchError, SourceResolutionError
from plate_reader.core.models import DriveSource, FtpSource, HttpSource, Photo
from plate_reader.service.drive import DriveDownloader
from plate_reader.service.ftp import FtpDownloader
from plate_reader.service.http import HttpDownloader

logger = logging.getLogger(__name__)


class PhotoStorage:
    """Single download entry point for every photo source."""

    def __init__(self, config: Optional[Config] = None, drive=None, ftp=None, http=None):
        """
        Initialize photo storage.

        Args:
            config: Service configuration, used to build downloaders lazily
            drive: Optional Drive downloader (`async download(file_id)`)
            ftp: Optional FTP downloader (`async download(path)`)
            http: Optional HTTP downloader (`async download(url)`)
        """
        self.config = config or Config()
        self._drive = drive
        self._ftp = ftp
        self._http = http

    @property
    def drive(self):
        if self._drive is None:
            self._drive = DriveDownloader(self.config)
        return self._drive

    @property
    def ftp(self):
        if self._ftp is None:
            self._ftp = FtpDownloader(self.config)
        return self._ftp

    @property
    def http(self):
        if self._http is None:
            self._http = HttpDownloader(self.config)
        return self._http

    def resolve_source(self, photo: Photo) -> Union[DriveSource, FtpSource, HttpSource]:
        """
        Fetchable location of a photo.

        Raises:
            SourceResolutionError: when the record has no usable location
        """
        source = photo.source_location()
        if source is None:
            raise SourceResolutionError(
                f"Photo {photo.external_id} has no resolvable source "
                f"(kind={photo.source_kind!r}, link={photo.original_link!r})"
            )
        return source

    async def fetch(self, source: Union[DriveSource, FtpSource, HttpSource]) -> bytes:
        """
        Download the bytes behind a source location.

        Raises:
            FetchError: on any transport failure
        """
        if isinstance(source, DriveSource):
            return await self.drive.download(source.file_id)
        if isinstance(source, FtpSource):
            return await self.ftp.download(source.path)
        if isinstance(source, HttpSource):
            return await self.http.download(source.url)
        raise FetchError(f"Unsupported source: {source!r}")
