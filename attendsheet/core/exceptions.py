"""
Domain error hierarchy and global exception handlers.

Handlers map domain errors to JSON bodies and keep stack traces away from
clients.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Domain errors ───────────────────────────────────────────────────
class AttendSheetError(Exception):
    """Base class for all domain errors."""

    code: str = "ATTENDSHEET_ERROR"
    status_code: int = 400

    def __init__(self, message: str = "") -> None:
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class ConfigurationError(AttendSheetError):
    """A rule configuration write violated its invariants."""

    code = "INVALID_CONFIGURATION"
    status_code = 422

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or [message]
        super().__init__(message)


class RecordNotFoundError(AttendSheetError):
    code = "RECORD_NOT_FOUND"
    status_code = 404

    def __init__(self, record_id: int) -> None:
        self.record_id = record_id
        super().__init__(f"Confirmation record {record_id} not found")


class SheetNotFoundError(AttendSheetError):
    code = "SHEET_NOT_FOUND"
    status_code = 404

    def __init__(self, sheet_id: int) -> None:
        self.sheet_id = sheet_id
        super().__init__(f"Sheet {sheet_id} not found")


class SnapshotNotFoundError(AttendSheetError):
    code = "SNAPSHOT_NOT_FOUND"
    status_code = 404

    def __init__(self, company_id: str, version: int) -> None:
        self.company_id = company_id
        self.version = version
        super().__init__(f"No rule snapshot v{version} for company {company_id}")


class InvalidTransitionError(AttendSheetError):
    """A lifecycle transition was attempted from a state that forbids it."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, transition: str, reason: str) -> None:
        self.transition = transition
        self.reason = reason
        super().__init__(f"Cannot {transition}: {reason}")


class ChannelError(AttendSheetError):
    """A notification channel call failed."""

    code = "CHANNEL_ERROR"
    status_code = 502


class ChannelTimeoutError(ChannelError):
    code = "CHANNEL_TIMEOUT"
    status_code = 504


class ArchiveStoreError(AttendSheetError):
    code = "ARCHIVE_STORE_ERROR"
    status_code = 502


# ── Handlers ────────────────────────────────────────────────────────
async def _domain_error_handler(_request: Request, exc: AttendSheetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("Upstream failure surfaced to client: %s", exc)
    content: dict = {"detail": exc.message, "code": exc.code, "success": False}
    if isinstance(exc, ConfigurationError):
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
        headers=getattr(exc, "headers", None),
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal database error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(AttendSheetError, _domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
