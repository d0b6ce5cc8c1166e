"""
Spreadsheet parsing for batch imports.

Reads the CSV or XLSX plate survey sheets, normalizes column names and
photo links, and classifies each link into a drive, ftp or http source.
"""

import csv
import io
import re
import hashlib
import logging
import zipfile
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from plate_reader.core.errors import ImportValidationError

logger = logging.getLogger(__name__)

ID_COLUMNS = ("id_prisma", "idprisma", "id", "cid")
LINK_COLUMNS = ("link_foto_plaqueta", "linkfotoplaqueta", "file_url", "link_ftp", "link_foto", "photo_link")

_DRIVE_PATTERNS = (
    re.compile(r"drive\.usercontent\.google\.com/download\?(?:.*&)?id=([^&]+)"),
    re.compile(r"drive\.google\.com/file/d/([^/?]+)"),
    re.compile(r"drive\.google\.com/open\?(?:.*&)?id=([^&]+)"),
)
_WINDOWS_PATH = re.compile(r"^[A-Za-z]:\\")
_ZERO_FORMAT = re.compile(r"^0+$")
XLSX_MAGIC = b"PK\x03\x04"


def content_hash(content: bytes) -> str:
    """SHA-256 of the raw spreadsheet bytes, used as the batch dedup key."""
    return hashlib.sha256(content).hexdigest()


def photo_hash(external_id: str, normalized_location: str) -> str:
    """Dedup hash of one photo row."""
    return hashlib.sha256(f"{external_id}:{normalized_location}".encode("utf-8")).hexdigest()


def _decode(content: bytes) -> str:
    for encoding in ("utf-8-sig", "latin-1"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ImportValidationError("Unable to decode spreadsheet content")


def _normalize_header(header: str) -> str:
    normalized = (header or "").strip().lower()
    if normalized in ID_COLUMNS:
        return "external_id"
    if normalized in LINK_COLUMNS:
        return "link"
    return normalized


def _csv_table(content: bytes) -> List[List[str]]:
    text = _decode(content)
    if not text.strip():
        raise ImportValidationError("Spreadsheet is empty")

    sample = text[:4096]
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel

    return list(csv.reader(io.StringIO(text), dialect))


def _cell_text(cell) -> str:
    """Text of a worksheet cell, as the sheet displays it for ids and links."""
    value = cell.value
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        # Zero-padded number formats ("000000") hold ids with leading zeros
        number_format = getattr(cell, "number_format", None) or ""
        if _ZERO_FORMAT.match(number_format):
            return str(value).zfill(len(number_format))
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _xlsx_table(content: bytes) -> List[List[str]]:
    """First worksheet of an XLSX workbook, every cell as text."""
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (zipfile.BadZipFile, InvalidFileException, KeyError, OSError) as e:
        raise ImportValidationError(f"Unreadable XLSX workbook: {e}")

    try:
        if not workbook.worksheets:
            raise ImportValidationError("Workbook has no worksheets")
        sheet = workbook.worksheets[0]
        return [[_cell_text(cell) for cell in row] for row in sheet.iter_rows()]
    finally:
        workbook.close()


def is_xlsx(content: bytes, file_name: Optional[str] = None) -> bool:
    """XLSX by extension, or by the ZIP signature every workbook starts with."""
    if file_name and file_name.lower().endswith(".xlsx"):
        return True
    return content[:4] == XLSX_MAGIC


def parse_rows(content: bytes, file_name: Optional[str] = None) -> List[Dict[str, str]]:
    """
    Parse CSV or XLSX bytes into rows keyed by normalized column names.

    Every value is kept as text so ids and numbers keep their leading zeros.
    """
    table = _xlsx_table(content) if is_xlsx(content, file_name) else _csv_table(content)
    if not table:
        raise ImportValidationError("Spreadsheet has no header row")

    header, body = table[0], table[1:]
    columns = [_normalize_header(h) for h in header]
    if "external_id" not in columns or "link" not in columns:
        raise ImportValidationError(
            f"Spreadsheet must have an id column ({', '.join(ID_COLUMNS)}) "
            f"and a photo link column ({', '.join(LINK_COLUMNS)})"
        )

    rows = []
    for values in body:
        if not any(v.strip() for v in values):
            continue
        row = {}
        for column, value in zip(columns, values):
            if column not in row:
                row[column] = value.strip()
        rows.append(row)

    logger.info(f"Spreadsheet parsed: {len(rows)} rows")

    return rows


def drive_file_id(link: str) -> Optional[str]:
    for pattern in _DRIVE_PATTERNS:
        match = pattern.search(link)
        if match:
            return match.group(1)
    return None


def normalize_link(link: str) -> str:
    """
    Reduce a photo link to a relative path.

    "https://host/45_ROCHA/JPEG_1.jpg"   -> "45_ROCHA/JPEG_1.jpg"
    "G:\\Rio\\...\\141_PAVUNA\\a.jpg"     -> "141_PAVUNA/a.jpg"
    "/45_ROCHA//JPEG_1.jpg"              -> "45_ROCHA/JPEG_1.jpg"
    """
    if not link:
        return ""
    path = link.strip()
    if re.match(r"^https?://", path, re.IGNORECASE):
        path = urlparse(path).path
    elif _WINDOWS_PATH.match(path):
        parts = re.split(r"[\\/]", path)
        path = "/".join(parts[-2:])

    path = path.replace("\\", "/")
    path = re.sub(r"/+", "/", path)
    return path.lstrip("/")


def classify_link(link: str, mode: str = "auto") -> Tuple[Optional[str], Optional[str], str]:
    """
    Decide how a photo link will be fetched.

    Returns (source_kind, value, normalized_location). source_kind is None when the
    link cannot be turned into any source.
    """
    link = (link or "").strip()
    if not link:
        return None, None, ""

    file_id = drive_file_id(link)
    if file_id:
        return "drive", file_id, f"drive:{file_id}"

    is_http = bool(re.match(r"^https?://", link, re.IGNORECASE))
    normalized = normalize_link(link)

    if is_http and mode in ("auto", "http"):
        return "http", link, normalized
    if mode == "http":
        return None, None, normalized
    if not normalized:
        return None, None, ""
    return "ftp", normalized, normalized
