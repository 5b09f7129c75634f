"""
Identity & liveness verification on top of the face-recognition collaborator.

The collaborator (AWS Rekognition in production) only returns similarity
scores and per-face quality metrics.  This module turns those into decisions:

* claimed-identity mode: accept only the match for the claimed user, judged
  on *its* similarity;
* open identification ("watch") mode: the strongest match that clears the
  threshold is the discovered worker;
* liveness: a quality-metric heuristic.  Advisory only; it never blocks a
  check-in by itself.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import Settings
from app.core.exceptions import (BelowSimilarityThreshold, IdentityMismatch,
                                 InvalidImage, NoMatchingIdentity,
                                 RecognitionUnavailable)

logger = logging.getLogger(__name__)


# ── Collaborator contract ───────────────────────────────────────────
@dataclass(frozen=True)
class FaceMatch:
    external_id: str | None
    similarity: float
    face_confidence: float | None = None


@dataclass(frozen=True)
class FaceQuality:
    confidence: float
    sharpness: float | None = None
    brightness: float | None = None


class RecognitionClient(Protocol):
    async def search_faces(self, image: bytes, collection_id: str) -> list[FaceMatch]: ...

    async def detect_faces(self, image: bytes) -> list[FaceQuality]: ...


class RekognitionClient:
    """AWS Rekognition adapter. One boto3 client per process."""

    def __init__(self, settings: Settings, client=None) -> None:
        self._max_faces = settings.RECOGNITION_MAX_FACES
        # Server-side floor; the verifier applies the real threshold.
        self._match_floor = 0.0
        self._client = client or boto3.client(
            "rekognition",
            region_name=settings.AWS_REGION,
            config=Config(
                connect_timeout=settings.RECOGNITION_TIMEOUT_SECONDS,
                read_timeout=settings.RECOGNITION_TIMEOUT_SECONDS,
                retries={"max_attempts": settings.RECOGNITION_MAX_ATTEMPTS, "mode": "standard"},
            ),
        )

    async def search_faces(self, image: bytes, collection_id: str) -> list[FaceMatch]:
        try:
            response = await asyncio.to_thread(
                self._client.search_faces_by_image,
                CollectionId=collection_id,
                Image={"Bytes": image},
                MaxFaces=self._max_faces,
                FaceMatchThreshold=self._match_floor,
            )
        except ClientError as exc:
            # No face in the probe image is a normal "no match" outcome.
            if exc.response.get("Error", {}).get("Code") == "InvalidParameterException":
                logger.info("Face search found no face in image: %s", exc)
                return []
            logger.error("Face search failed in collection %s: %s", collection_id, exc)
            raise RecognitionUnavailable() from exc
        except BotoCoreError as exc:
            logger.error("Face search failed in collection %s: %s", collection_id, exc)
            raise RecognitionUnavailable() from exc

        matches = [
            FaceMatch(
                external_id=m.get("Face", {}).get("ExternalImageId"),
                similarity=float(m.get("Similarity") or 0.0),
                face_confidence=m.get("Face", {}).get("Confidence"),
            )
            for m in response.get("FaceMatches", [])
        ]
        logger.debug("Face search in %s returned %d match(es)", collection_id, len(matches))
        return matches

    async def detect_faces(self, image: bytes) -> list[FaceQuality]:
        try:
            response = await asyncio.to_thread(
                self._client.detect_faces,
                Image={"Bytes": image},
                Attributes=["DEFAULT"],
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Face detection failed: %s", exc)
            raise RecognitionUnavailable() from exc

        return [
            FaceQuality(
                confidence=float(face.get("Confidence") or 0.0),
                sharpness=face.get("Quality", {}).get("Sharpness"),
                brightness=face.get("Quality", {}).get("Brightness"),
            )
            for face in response.get("FaceDetails", [])
        ]


# ── Decisions (pure) ────────────────────────────────────────────────
@dataclass(frozen=True)
class LivenessPolicy:
    threshold: float = 50.0
    min_sharpness: float = 50.0
    min_brightness: float = 20.0
    max_brightness: float = 80.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "LivenessPolicy":
        return cls(
            threshold=settings.LIVENESS_THRESHOLD,
            min_sharpness=settings.LIVENESS_MIN_SHARPNESS,
            min_brightness=settings.LIVENESS_MIN_BRIGHTNESS,
            max_brightness=settings.LIVENESS_MAX_BRIGHTNESS,
        )


@dataclass(frozen=True)
class LivenessResult:
    is_live: bool
    liveness_score: float
    spoof_flag: bool
    reasons: list[str] = field(default_factory=list)
    sharpness: float | None = None
    brightness: float | None = None


def rank_matches(matches: list[FaceMatch]) -> list[FaceMatch]:
    """Matches ordered by similarity, strongest first."""
    return sorted(matches, key=lambda m: m.similarity, reverse=True)


def pick_claimed_match(matches: list[FaceMatch], claimed_id: str, threshold: float) -> FaceMatch:
    """Accept the claimed identity on its own score, ignoring other identities."""
    claimed = next((m for m in rank_matches(matches) if m.external_id == claimed_id), None)
    if claimed is None:
        raise IdentityMismatch()
    if claimed.similarity < threshold:
        raise BelowSimilarityThreshold(
            f"Face similarity ({claimed.similarity:.1f}%) is below the required "
            f"threshold ({threshold:g}%)"
        )
    return claimed


def pick_best_match(matches: list[FaceMatch], threshold: float) -> FaceMatch:
    """First match by similarity that clears *threshold* and names someone."""
    for match in rank_matches(matches):
        if match.external_id and match.similarity >= threshold:
            return match
    raise NoMatchingIdentity()


def score_liveness(faces: list[FaceQuality], policy: LivenessPolicy) -> LivenessResult:
    """Quality-metric heuristic; the primary (first) face is judged."""
    if not faces:
        return LivenessResult(
            is_live=False,
            liveness_score=0.0,
            spoof_flag=True,
            reasons=["No face detected in image"],
        )

    primary = faces[0]
    sharpness = primary.sharpness if primary.sharpness is not None else 0.0
    brightness = primary.brightness if primary.brightness is not None else 0.0

    score = 100.0
    spoof = False
    reasons: list[str] = []

    if sharpness < policy.min_sharpness:
        score -= (policy.min_sharpness - sharpness) * 2
        spoof = True
        reasons.append(f"Low sharpness ({sharpness:.1f}), possible photo/print")

    if brightness < policy.min_brightness:
        score -= (policy.min_brightness - brightness) * 1.5
        spoof = True
        reasons.append(f"Too dark (brightness: {brightness:.1f}), possible photo/print")
    elif brightness > policy.max_brightness:
        score -= (brightness - policy.max_brightness) * 1.5
        spoof = True
        reasons.append(f"Too bright (brightness: {brightness:.1f}), possible photo/print")

    score = max(0.0, min(100.0, score))
    return LivenessResult(
        is_live=score >= policy.threshold and not spoof,
        liveness_score=round(score, 2),
        spoof_flag=spoof,
        reasons=reasons,
        sharpness=sharpness,
        brightness=brightness,
    )


def decode_image(data: str) -> bytes:
    """Decode a base64 image, with or without a ``data:...;base64,`` prefix."""
    if not data:
        raise InvalidImage("Image is required")
    payload = data.split(",", 1)[1] if "," in data else data
    try:
        image = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImage() from exc
    if not image:
        raise InvalidImage()
    return image


# ── Verifier ────────────────────────────────────────────────────────
class BiometricVerifier:
    """Applies thresholds, timeouts and the liveness policy to a client."""

    def __init__(self, client: RecognitionClient, settings: Settings) -> None:
        self._client = client
        self._timeout = settings.RECOGNITION_TIMEOUT_SECONDS
        self._collection_prefix = settings.RECOGNITION_COLLECTION_PREFIX
        self.threshold = settings.FACE_SIMILARITY_THRESHOLD
        self.policy = LivenessPolicy.from_settings(settings)

    def collection_for(self, organization_id: str, configured: str | None = None) -> str:
        return configured or f"{self._collection_prefix}-{organization_id}"

    async def _bounded(self, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("Recognition call exceeded %.1fs", self._timeout)
            raise RecognitionUnavailable() from exc

    async def identify(self, image: bytes, collection_id: str) -> list[FaceMatch]:
        matches = await self._bounded(self._client.search_faces(image, collection_id))
        return rank_matches(matches)

    async def verify_identity(
        self,
        image: bytes,
        claimed_user_id: str,
        collection_id: str,
        threshold: float | None = None,
    ) -> FaceMatch:
        threshold = self.threshold if threshold is None else threshold
        matches = await self.identify(image, collection_id)
        try:
            match = pick_claimed_match(matches, claimed_user_id, threshold)
        except (IdentityMismatch, BelowSimilarityThreshold) as exc:
            logger.info(
                "Identity check failed for user %s (%s); candidates=%s",
                claimed_user_id,
                exc.code,
                [(m.external_id, m.similarity) for m in matches],
            )
            raise
        return match

    async def discover_identity(
        self,
        image: bytes,
        collection_id: str,
        threshold: float | None = None,
    ) -> FaceMatch:
        threshold = self.threshold if threshold is None else threshold
        matches = await self.identify(image, collection_id)
        return pick_best_match(matches, threshold)

    async def assess_liveness(self, image: bytes) -> LivenessResult:
        """Never raises: a collaborator failure is recorded as a spoof signal."""
        try:
            faces = await self._bounded(self._client.detect_faces(image))
        except RecognitionUnavailable as exc:
            return LivenessResult(
                is_live=False,
                liveness_score=0.0,
                spoof_flag=True,
                reasons=[f"Liveness detection error: {exc.detail}"],
            )
        result = score_liveness(faces, self.policy)
        logger.info(
            "Liveness: live=%s score=%.1f spoof=%s reasons=%s",
            result.is_live,
            result.liveness_score,
            result.spoof_flag,
            result.reasons or ["Passed all quality checks"],
        )
        return result
