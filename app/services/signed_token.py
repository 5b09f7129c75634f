"""
HMAC-SHA256 signed tokens for location and visitor QR codes.

Wire format::

    base64( <canonical JSON> + "." + hex(HMAC-SHA256(secret, <canonical JSON>)) )

The JSON part may itself contain dots, so verification splits on the *last*
separator.  Nothing decoded from a token is trusted until the signature has
been checked.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.exceptions import TokenInvalid

logger = logging.getLogger(__name__)

_SEPARATOR = "."

PayloadT = TypeVar("PayloadT", bound=BaseModel)


# ── Payloads ────────────────────────────────────────────────────────
class LocationTokenPayload(BaseModel):
    """Binds a QR code to one geofence of one organization."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    organization_id: str
    location_id: str


class VisitorTokenPayload(BaseModel):
    """Visitor pass: who, for which organization, when and where."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    visitor_id: str
    organization_id: str
    name: str
    entry_date: datetime
    exit_date: datetime
    access_areas: tuple[str, ...] = Field(default_factory=tuple)


# ── Secret handling ─────────────────────────────────────────────────
def resolve_secret(raw: str) -> bytes:
    """Return the signing key, unwrapping a base64-delivered secret.

    A value that is valid base64 of UTF-8 text is decoded; anything else is
    used verbatim.
    """
    if not raw:
        raise ValueError("Signing secret is required")
    try:
        decoded = base64.b64decode(raw, validate=True)
        decoded.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return raw.encode("utf-8")
    if not decoded:
        return raw.encode("utf-8")
    return decoded


# ── Core codec ──────────────────────────────────────────────────────
def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _signature(message: str, secret: bytes) -> str:
    return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


def sign(payload: Any, secret: bytes) -> str:
    """Serialise *payload* (JSON-compatible) and return a signed token."""
    if not secret:
        raise ValueError("Signing secret is required")
    message = _canonical_json(payload)
    combined = f"{message}{_SEPARATOR}{_signature(message, secret)}"
    return base64.b64encode(combined.encode("utf-8")).decode("ascii")


def verify(token: str, secret: bytes) -> Any:
    """Return the JSON payload carried by *token*.

    Raises:
        TokenInvalid: bad encoding, missing separator, bad signature or
            unparsable payload.
    """
    if not secret:
        raise ValueError("Signing secret is required")
    if not token:
        raise TokenInvalid("QR data is required")

    token = token.strip()
    try:
        raw = base64.b64decode(token, validate=True)
        decoded = raw.decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise TokenInvalid("Invalid or malformed QR") from exc
    # Reject non-canonical encodings (altered padding bits decode to the same bytes).
    if base64.b64encode(raw).decode("ascii") != token:
        raise TokenInvalid("Invalid or malformed QR")

    message, sep, provided = decoded.rpartition(_SEPARATOR)
    if not sep:
        raise TokenInvalid("Invalid or malformed QR: missing signature")

    expected = _signature(message, secret)
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected signed token with bad signature")
        raise TokenInvalid("Invalid QR signature: payload has been tampered with")

    try:
        return json.loads(message)
    except json.JSONDecodeError as exc:
        raise TokenInvalid("Invalid or malformed QR payload") from exc


def _verify_as(token: str, secret: bytes, model: type[PayloadT]) -> PayloadT:
    data = verify(token, secret)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise TokenInvalid("QR payload does not have the expected shape") from exc


# ── Typed helpers ───────────────────────────────────────────────────
def sign_location_token(payload: LocationTokenPayload, secret: bytes) -> str:
    return sign(payload.model_dump(mode="json"), secret)


def verify_location_token(token: str, secret: bytes) -> LocationTokenPayload:
    return _verify_as(token, secret, LocationTokenPayload)


def sign_visitor_token(payload: VisitorTokenPayload, secret: bytes) -> str:
    return sign(payload.model_dump(mode="json"), secret)


def verify_visitor_token(token: str, secret: bytes) -> VisitorTokenPayload:
    return _verify_as(token, secret, VisitorTokenPayload)


class SignedTokenCodec:
    """Deployment-wide codec bound to one secret; built once at start-up."""

    def __init__(self, raw_secret: str) -> None:
        self._secret = resolve_secret(raw_secret)

    def sign_location(self, organization_id: str, location_id: str) -> str:
        return sign_location_token(
            LocationTokenPayload(organization_id=organization_id, location_id=location_id),
            self._secret,
        )

    def verify_location(self, token: str) -> LocationTokenPayload:
        return verify_location_token(token, self._secret)

    def sign_visitor(self, payload: VisitorTokenPayload) -> str:
        return sign_visitor_token(payload, self._secret)

    def verify_visitor(self, token: str) -> VisitorTokenPayload:
        return verify_visitor_token(token, self._secret)
