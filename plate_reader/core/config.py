import os
import logging
from typing import Dict, Any, List, Optional
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Configuration class for the plate reading service."""

    def __init__(self):
        # Supabase configuration
        self.supabase_url = os.getenv("SUPABASE_URL")
        self.supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

        # Recognition policy
        self.min_confidence = _env_float("MIN_CONFIDENCE", 95.0)
        self.digit_length = _env_int("DIGIT_LENGTH", 6)
        self.cost_per_photo = _env_float("COST_PER_PHOTO", 0.001)

        # Processing configuration
        self.max_attempts = _env_int("MAX_ATTEMPTS", 3)
        self.stale_minutes = _env_int("STALE_MINUTES", 10)
        self.page_size = _env_int("PAGE_SIZE", 10)
        self.photo_delay_ms = _env_int("PHOTO_DELAY_MS", 500)

        # Periodic trigger
        self.scheduler_enabled = _env_bool("SCHEDULER_ENABLED", True)
        self.scheduler_interval_seconds = _env_int("SCHEDULER_INTERVAL_SECONDS", 3 * 60 * 60)

        # Import classification of photo links: auto, ftp or http
        self.photo_source = os.getenv("PHOTO_SOURCE", "auto").strip().lower()

        # AWS Rekognition
        self.aws_region = os.getenv("AWS_REGION", "us-east-1")
        self.aws_access_key_id = os.getenv("AWS_ACCESS_KEY_ID")
        self.aws_secret_access_key = os.getenv("AWS_SECRET_ACCESS_KEY")

        # Google Drive service account
        self.google_credentials_path = os.getenv("GOOGLE_CREDENTIALS_PATH")
        self.google_credentials_json = os.getenv("GOOGLE_CREDENTIALS_JSON")

        # Automatic ingestion of new batch spreadsheets from a Drive folder
        self.drive_folder_id = os.getenv("DRIVE_FOLDER_ID")
        self.drive_file_pattern = os.getenv("DRIVE_FILE_PATTERN")

        # FTP
        self.ftp_host = os.getenv("FTP_HOST")
        self.ftp_port = _env_int("FTP_PORT", 21)
        self.ftp_user = os.getenv("FTP_USER")
        self.ftp_password = os.getenv("FTP_PASSWORD")
        self.ftp_secure = _env_bool("FTP_SECURE", False)
        self.ftp_base_folder = os.getenv("FTP_BASE_FOLDER", "/")

        # HTTP downloads
        self.http_username = os.getenv("HTTP_USERNAME")
        self.http_password = os.getenv("HTTP_PASSWORD")
        self.http_timeout_seconds = _env_float("HTTP_TIMEOUT_SECONDS", 30.0)
        self.http_max_bytes = _env_int("HTTP_MAX_BYTES", 50 * 1024 * 1024)

        # Email (Resend)
        self.resend_api_key = os.getenv("RESEND_API_KEY")
        self.email_from = os.getenv("EMAIL_FROM", "plate-reader@localhost")
        self.email_to: List[str] = [
            address.strip() for address in os.getenv("EMAIL_TO", "").split(",") if address.strip()
        ]
        self.api_base_url = os.getenv("API_BASE_URL", "http://localhost:8001").rstrip("/")

    def _get_supabase_client(self) -> Client:
        """Get or create Supabase client."""
        return create_client(self.supabase_url, self.supabase_key)

    @property
    def photo_delay_seconds(self) -> float:
        return max(self.photo_delay_ms, 0) / 1000.0

    def get_ftp_config(self) -> Dict[str, Any]:
        """Get FTP connection configuration."""
        return {
            "host": self.ftp_host,
            "port": self.ftp_port,
            "user": self.ftp_user,
            "password": self.ftp_password,
            "secure": self.ftp_secure,
            "base_folder": self.ftp_base_folder,
        }

    def get_http_auth(self) -> Optional[tuple]:
        """Basic auth tuple for photo downloads, if configured."""
        if self.http_username and self.http_password:
            return (self.http_username, self.http_password)
        return None

    def get_processing_config(self) -> Dict[str, Any]:
        """Processing knobs, as exposed by the worker status endpoint."""
        return {
            "min_confidence": self.min_confidence,
            "digit_length": self.digit_length,
            "max_attempts": self.max_attempts,
            "stale_minutes": self.stale_minutes,
            "page_size": self.page_size,
            "photo_delay_ms": self.photo_delay_ms,
            "scheduler_interval_seconds": self.scheduler_interval_seconds,
            "drive_folder_id": self.drive_folder_id,
        }


config = Config()
