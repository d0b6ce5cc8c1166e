"""
FTP photo downloads.
"""

import asyncio
import io
import ftplib
import logging
import posixpath
from typing import Optional

from plate_reader.core.config import Config
from plate_reader.core.errors import FetchError

logger = logging.getLogger(__name__)


class FtpDownloader:
    """Downloads photos from the FTP server by path relative to the base folder."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    def _connect(self) -> ftplib.FTP:
        settings = self.config.get_ftp_config()
        if not settings["host"]:
            raise FetchError("FTP_HOST is not configured")

        ftp = ftplib.FTP_TLS() if settings["secure"] else ftplib.FTP()
        ftp.connect(settings["host"], settings["port"], timeout=30)
        ftp.login(settings["user"] or "anonymous", settings["password"] or "")
        if settings["secure"]:
            ftp.prot_p()
        return ftp

    def full_path(self, path: str) -> str:
        base = self.config.ftp_base_folder or "/"
        return posixpath.join(base, path.lstrip("/"))

    def _download(self, path: str) -> bytes:
        remote = self.full_path(path)
        buffer = io.BytesIO()
        ftp = self._connect()
        try:
            ftp.retrbinary(f"RETR {remote}", buffer.write)
        finally:
            try:
                ftp.quit()
            except ftplib.all_errors:
                ftp.close()
        return buffer.getvalue()

    async def download(self, path: str) -> bytes:
        """
        Download a file from the FTP server.

        Raises:
            FetchError: on connection, auth or transfer errors, or an empty file
        """
        logger.debug(f"📥 Downloading via FTP: {path}")
        try:
            content = await asyncio.to_thread(self._download, path)
        except FetchError:
            raise
        except ftplib.all_errors as e:
            raise FetchError(f"FTP download failed for {path}: {e}")

        if not content:
            raise FetchError(f"Empty file on FTP: {path}")
        return content
