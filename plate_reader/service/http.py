"""
HTTP photo downloads.
"""

import httpx
import logging
from typing import Optional

from plate_reader.core.config import Config
from plate_reader.core.errors import FetchError

logger = logging.getLogger(__name__)


class HttpDownloader:
    """Downloads photos over HTTP(S), with optional basic auth."""

    def __init__(self, config: Optional[Config] = None, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            config: Service configuration
            client: Shared client. Without one, each download opens its own, since
                cycles may run on different event loops.
        """
        self.config = config or Config()
        self.client = client

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.http_timeout_seconds),
            follow_redirects=True,
        )

    async def download(self, url: str) -> bytes:
        """
        Download a file and return its bytes.

        The body is streamed and the download is abandoned as soon as it exceeds
        `http_max_bytes`, so an oversized file is never held in memory.

        Raises:
            FetchError: on timeout, transport error, non-200 status or oversized body
        """
        logger.debug(f"📥 Downloading via HTTP: {url}")
        max_bytes = self.config.http_max_bytes
        client = self.client or self._new_client()
        try:
            async with client.stream("GET", url, auth=self.config.get_http_auth()) as response:
                if response.status_code != 200:
                    raise FetchError(f"HTTP {response.status_code}: {response.reason_phrase} - {url}")

                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > max_bytes:
                    raise FetchError(f"File too large ({declared} bytes) - {url}")

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > max_bytes:
                        raise FetchError(f"File too large (over {max_bytes} bytes) - {url}")
        except httpx.TimeoutException:
            raise FetchError(f"Timeout downloading {url}")
        except httpx.RequestError as e:
            raise FetchError(f"HTTP request error downloading {url}: {e}")
        finally:
            if self.client is None:
                await client.aclose()

        if not buffer:
            raise FetchError(f"Empty response body - {url}")

        logger.debug(f"✅ Download complete: {len(buffer) / 1024:.1f}KB")
        return bytes(buffer)
