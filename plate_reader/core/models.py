"""
Database and domain models for the plate reading pipeline.
"""

from enum import Enum
from pydantic import BaseModel, Field
from typing import Annotated, Optional, Dict, List, Literal, Union
from datetime import datetime


class PhotoStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    ERROR = "error"
    IGNORED = "ignored"


class BatchStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    PROCESSING = "processing"
    CONCLUDED = "concluded"
    ERROR = "error"


class ExtractionOutcome(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


TERMINAL_PHOTO_STATUSES = (
    PhotoStatus.SUCCESS,
    PhotoStatus.FAILURE,
    PhotoStatus.WARNING,
    PhotoStatus.ERROR,
    PhotoStatus.IGNORED,
)


class DriveSource(BaseModel):
    """Photo stored on Google Drive, addressed by file id."""
    kind: Literal["drive"] = "drive"
    file_id: str


class FtpSource(BaseModel):
    """Photo stored on the FTP server, addressed by a path relative to the base folder."""
    kind: Literal["ftp"] = "ftp"
    path: str


class HttpSource(BaseModel):
    """Photo reachable through a plain HTTP(S) URL."""
    kind: Literal["http"] = "http"
    url: str


SourceLocation = Annotated[Union[DriveSource, FtpSource, HttpSource], Field(discriminator="kind")]


class Candidate(BaseModel):
    """A digit string read off a photo, with the recognizer's confidence."""
    text: str
    confidence: float


class ErrorDetail(BaseModel):
    message: str
    timestamp: datetime
    kind: str = "unknown"
    attempt: Optional[int] = None


class AuditNote(BaseModel):
    kind: str
    message: str
    timestamp: datetime


class ExtractionResult(BaseModel):
    """Decision produced by the number extractor for one image."""
    number: str = ""
    confidence: float = 0.0
    outcome: ExtractionOutcome
    reason: str
    alternatives: List[Candidate] = Field(default_factory=list)
    # True when the recognition call itself failed rather than the image
    service_error: bool = False


class Photo(BaseModel):
    """Photo model representing the photos table."""
    id: str
    batch_id: str
    batch_name: str
    external_id: str
    original_link: Optional[str] = None
    source_kind: Optional[str] = None
    drive_file_id: Optional[str] = None
    ftp_path: Optional[str] = None
    http_url: Optional[str] = None
    hash: Optional[str] = None
    status: PhotoStatus = PhotoStatus.PENDING
    detected_number: str = ""
    confidence: Optional[float] = None
    alternatives: List[Candidate] = Field(default_factory=list)
    requires_review: bool = False
    reason: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[ErrorDetail] = None
    error_history: List[ErrorDetail] = Field(default_factory=list)
    notes: List[AuditNote] = Field(default_factory=list)
    cost: float = 0.0
    duration_ms: Optional[int] = None
    image_size: Optional[int] = None
    imported_at: Optional[datetime] = None
    last_attempted_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def source_location(self) -> Optional[Union[DriveSource, FtpSource, HttpSource]]:
        """Tagged source of this photo, or None when it cannot be determined."""
        candidates = {
            "drive": self.drive_file_id,
            "ftp": self.ftp_path,
            "http": self.http_url,
        }
        kind = self.source_kind
        if kind is None:
            populated = [name for name, value in candidates.items() if value]
            if len(populated) != 1:
                return None
            kind = populated[0]

        value = candidates.get(kind)
        if not value:
            return None
        if kind == "drive":
            return DriveSource(file_id=value)
        if kind == "ftp":
            return FtpSource(path=value)
        return HttpSource(url=value)

    @property
    def location_label(self) -> str:
        return self.original_link or self.http_url or self.ftp_path or self.drive_file_id or ""


class Batch(BaseModel):
    """Batch model representing the batches table."""
    id: str
    name: str
    source_file_id: Optional[str] = None
    source_file_name: Optional[str] = None
    file_hash: str
    file_size: Optional[int] = None
    digit_length: Optional[int] = None
    status: BatchStatus = BatchStatus.PENDING
    total_photos: int = 0
    imported_photos: int = 0
    pending_photos: int = 0
    processing_photos: int = 0
    success_photos: int = 0
    failure_photos: int = 0
    warning_photos: int = 0
    error_photos: int = 0
    estimated_cost: float = 0.0
    actual_cost: float = 0.0
    total_duration_seconds: Optional[float] = None
    average_duration_seconds: Optional[float] = None
    last_error: Optional[ErrorDetail] = None
    errors: List[ErrorDetail] = Field(default_factory=list)
    imported_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    concluded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusCounts(BaseModel):
    """Per-status photo counts for one batch (or every batch), from the grouped count query."""
    counts: Dict[str, int] = Field(default_factory=dict)
    cost: float = 0.0

    def get(self, status: PhotoStatus) -> int:
        return self.counts.get(status.value, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def failures(self) -> int:
        """Every terminal status other than success."""
        return sum(
            self.get(status) for status in TERMINAL_PHOTO_STATUSES if status != PhotoStatus.SUCCESS
        )

    def aggregate_fields(self) -> Dict[str, int]:
        return {
            "total_photos": self.total,
            "pending_photos": self.get(PhotoStatus.PENDING),
            "processing_photos": self.get(PhotoStatus.PROCESSING),
            "success_photos": self.get(PhotoStatus.SUCCESS),
            "failure_photos": self.failures,
            "warning_photos": self.get(PhotoStatus.WARNING),
            "error_photos": self.get(PhotoStatus.ERROR),
        }


class BatchStatusCounts(BaseModel):
    """Per-status batch counts with summed costs, across every batch."""
    counts: Dict[str, int] = Field(default_factory=dict)
    actual_cost: float = 0.0
    estimated_cost: float = 0.0

    def get(self, status: BatchStatus) -> int:
        return self.counts.get(status.value, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class ProcessResult(BaseModel):
    """Outcome of one Photo Processor invocation."""
    outcome: str
    photo: Optional[Photo] = None


class BatchSummary(BaseModel):
    """Aggregate stats handed to the notifier when a batch concludes."""
    batch_name: str
    total: int
    success: int
    failures: int
    warnings: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    actual_cost: float = 0.0


class CycleReport(BaseModel):
    """Result of one scheduling cycle."""
    batches_processed: int = 0
    total_photos: int = 0
    successes: int = 0
    failures: int = 0
    already_in_progress: bool = False
    elapsed_seconds: Optional[float] = None
    batch_name: Optional[str] = None
    error: Optional[str] = None


class ImportReport(BaseModel):
    """Result of importing one spreadsheet."""
    batch: Batch
    created: bool
    resumed: bool = False
    imported: int = 0
    duplicates: int = 0
    invalid: int = 0
