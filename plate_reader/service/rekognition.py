"""
AWS Rekognition text detection client.
"""

import asyncio
import logging
from typing import List, Optional

import boto3

from plate_reader.core.config import Config
from plate_reader.core.errors import RecognitionServiceError
from plate_reader.core.extraction import TextDetection

logger = logging.getLogger(__name__)


class RekognitionDetector:
    """OCR capability backed by Rekognition's DetectText."""

    def __init__(self, config: Optional[Config] = None, client=None):
        """
        Initialize the detector.

        Args:
            config: Service configuration (region and credentials)
            client: Optional pre-built boto3 rekognition client
        """
        self.config = config or Config()
        if client is not None:
            self.client = client
        else:
            kwargs = {"region_name": self.config.aws_region}
            if self.config.aws_access_key_id and self.config.aws_secret_access_key:
                kwargs["aws_access_key_id"] = self.config.aws_access_key_id
                kwargs["aws_secret_access_key"] = self.config.aws_secret_access_key
            self.client = boto3.client("rekognition", **kwargs)

        logger.info(f"✅ Rekognition detector initialized (region: {self.config.aws_region})")

    def _detect(self, image_bytes: bytes) -> List[TextDetection]:
        response = self.client.detect_text(Image={"Bytes": image_bytes})
        return [
            TextDetection(
                text=item.get("DetectedText", ""),
                confidence=float(item.get("Confidence", 0.0)),
                type=item.get("Type", "LINE"),
            )
            for item in response.get("TextDetections", [])
        ]

    async def detect_text(self, image_bytes: bytes) -> List[TextDetection]:
        """Run DetectText off the event loop."""
        try:
            return await asyncio.to_thread(self._detect, image_bytes)
        except Exception as e:
            logger.error(f"❌ Rekognition DetectText failed: {e}")
            raise RecognitionServiceError(f"Rekognition DetectText failed: {e}") from e
