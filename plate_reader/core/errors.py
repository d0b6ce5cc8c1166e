"""
Error taxonomy for the plate reading pipeline and its JSON rendering for the API.
"""

import logging
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class PlateReaderError(Exception):
    """Base class for errors with a stable kind and HTTP status."""
    kind = "internal"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SourceResolutionError(PlateReaderError):
    """Photo record carries no usable drive/ftp/http location."""
    kind = "data_integrity"


class FetchError(PlateReaderError):
    """Downloading photo bytes failed at the transport level."""
    kind = "fetch"
    status_code = 502


class RecognitionServiceError(PlateReaderError):
    """The OCR service call itself failed."""
    kind = "recognition"
    status_code = 502


class BatchNotFoundError(PlateReaderError):
    kind = "not_found"
    status_code = 404


class BatchStateError(PlateReaderError):
    kind = "invalid_state"
    status_code = 400


class DuplicateBatchError(PlateReaderError):
    kind = "duplicate"
    status_code = 409

    def __init__(self, message: str, existing_name: str = None):
        super().__init__(message)
        self.existing_name = existing_name


class ImportValidationError(PlateReaderError):
    kind = "invalid_import"
    status_code = 400


_HTTP_KINDS = {
    400: "bad_request",
    404: "not_found",
    409: "duplicate",
    422: "validation",
    503: "unavailable",
}


def error_body(kind: str, message: str) -> dict:
    return {"error": kind, "message": message}


def register_error_handlers(app: FastAPI):
    """Render every error response as {"error": kind, "message": ...}."""

    @app.exception_handler(PlateReaderError)
    async def plate_reader_error_handler(request: Request, exc: PlateReaderError):
        if exc.status_code >= 500:
            logger.error(f"{exc.kind} error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.kind, exc.message))

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        kind = _HTTP_KINDS.get(exc.status_code, "internal" if exc.status_code >= 500 else "error")
        return JSONResponse(status_code=exc.status_code, content=error_body(kind, str(exc.detail)))
