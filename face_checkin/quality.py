"""
Quality Gate

Validates a detection result before any matching or enrollment is attempted.
Pure functions of the detection result and the configured thresholds.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from face_checkin.config import (
    ENROLLMENT_MAX_BLUR,
    ENROLLMENT_MIN_QUALITY,
    VERIFICATION_MIN_QUALITY,
)
from face_checkin.schemas import DetectedFace, VerificationOutcome


class GatePurpose(str, Enum):
    ENROLLMENT = "enrollment"
    VERIFICATION = "verification"


@dataclass(frozen=True)
class QualityThresholds:
    enrollment_min_quality: float = ENROLLMENT_MIN_QUALITY
    verification_min_quality: float = VERIFICATION_MIN_QUALITY
    enrollment_max_blur: float = ENROLLMENT_MAX_BLUR

    def min_quality(self, purpose: GatePurpose) -> float:
        if purpose == GatePurpose.ENROLLMENT:
            return self.enrollment_min_quality
        return self.verification_min_quality


@dataclass(frozen=True)
class QualityVerdict:
    accepted: bool
    outcome: Optional[VerificationOutcome] = None
    face: Optional[DetectedFace] = None
    message: str = ""


NO_FACE_MESSAGE = "No face detected in image. Please ensure your face is clearly visible and try again."
MULTIPLE_FACES_MESSAGE = "Multiple faces detected. Please ensure only one face is visible."
LOW_QUALITY_MESSAGE = "Face quality too low. Please ensure good lighting and a clear image."
TOO_BLURRY_MESSAGE = "Image is too blurry. Please take a clearer photo."


def assess(
    faces: Sequence[DetectedFace],
    purpose: GatePurpose,
    thresholds: QualityThresholds = QualityThresholds()
) -> QualityVerdict:
    """
    Check that the capture holds exactly one face of sufficient quality.

    Rules, in order:
    1. zero faces -> NO_FACE_DETECTED, several -> MULTIPLE_FACES_DETECTED
    2. quality below the purpose's minimum -> LOW_QUALITY
    3. enrollment only: blur above the maximum -> LOW_QUALITY
    """
    if len(faces) == 0:
        return QualityVerdict(False, VerificationOutcome.NO_FACE_DETECTED, message=NO_FACE_MESSAGE)
    if len(faces) > 1:
        return QualityVerdict(False, VerificationOutcome.MULTIPLE_FACES_DETECTED, message=MULTIPLE_FACES_MESSAGE)

    face = faces[0]
    if face.quality < thresholds.min_quality(purpose):
        return QualityVerdict(False, VerificationOutcome.LOW_QUALITY, face, LOW_QUALITY_MESSAGE)

    if purpose == GatePurpose.ENROLLMENT and face.blur > thresholds.enrollment_max_blur:
        return QualityVerdict(False, VerificationOutcome.LOW_QUALITY, face, TOO_BLURRY_MESSAGE)

    return QualityVerdict(True, face=face)
