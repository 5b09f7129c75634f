"""
Verification error taxonomy and global exception handlers.

Every rejection in the check-in pipeline raises a ``VerificationError``
subclass carrying a specific, human-readable reason.  Handlers render them
(and anything unexpected) without leaking stack traces.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Taxonomy ────────────────────────────────────────────────────────
class VerificationError(Exception):
    """Base class for rejections that end a request with no side effects."""

    status_code: int = 400
    code: str = "verification_failed"
    default_detail: str = "Verification failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class TokenInvalid(VerificationError):
    code = "token_invalid"
    default_detail = "Invalid or malformed QR"


class LocationNotAllowed(VerificationError):
    status_code = 403
    code = "location_not_allowed"
    default_detail = "Location not allowed or inactive"


class GeofenceMisconfigured(VerificationError):
    status_code = 500
    code = "geofence_misconfigured"
    default_detail = "Geofence configuration is incomplete"


class InvalidCoordinates(VerificationError):
    code = "invalid_coordinates"
    default_detail = "Invalid latitude or longitude"


class InvalidImage(VerificationError):
    code = "invalid_image"
    default_detail = "Invalid base64 image format"


class NotAMember(VerificationError):
    status_code = 403
    code = "not_a_member"
    default_detail = "User does not belong to the specified organization"


class DuplicateCheckIn(VerificationError):
    status_code = 409
    code = "duplicate_check_in"
    default_detail = "You already have an active check-in today. Please check out first."


class IdentityMismatch(VerificationError):
    status_code = 403
    code = "identity_mismatch"
    default_detail = "Face does not match the current user"


class BelowSimilarityThreshold(VerificationError):
    status_code = 403
    code = "below_similarity_threshold"
    default_detail = "Face similarity is below the required threshold"


class NoMatchingIdentity(VerificationError):
    status_code = 404
    code = "no_matching_identity"
    default_detail = "No matching user found for this face"


class NoOpenCheckIn(VerificationError):
    code = "no_open_check_in"
    default_detail = "No active check-in found. Please check in first."


class EventNotFound(VerificationError):
    status_code = 404
    code = "event_not_found"
    default_detail = "Attendance event not found"


class InsufficientRole(VerificationError):
    status_code = 403
    code = "insufficient_role"
    default_detail = "Organization admin privileges required"


class RecognitionUnavailable(VerificationError):
    status_code = 503
    code = "recognition_unavailable"
    default_detail = "Face verification is temporarily unavailable. Please try again."


# ── Handlers ────────────────────────────────────────────────────────
async def _verification_error_handler(_request: Request, exc: VerificationError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s: %s", exc.code, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code, "success": False},
    )


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
    app.add_exception_handler(VerificationError, _verification_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
