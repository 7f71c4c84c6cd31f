"""
Pydantic models for the check-in domain, provider results and API schemas

Provider payloads are converted into these models at the adapter boundary,
so the decision pipeline never handles raw provider responses.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class VerificationOutcome(str, Enum):
    """Terminal outcome of a single verification call."""
    SUCCESS = "success"
    NO_FACE_DETECTED = "no_face_detected"
    MULTIPLE_FACES_DETECTED = "multiple_faces_detected"
    LOW_QUALITY = "low_quality"
    NOT_RECOGNIZED = "not_recognized"
    LOW_CONFIDENCE = "low_confidence"
    PROVIDER_ERROR = "provider_error"


class MatchPath(str, Enum):
    """Which matching strategy produced a decision."""
    INDEXED = "indexed"
    LINEAR = "linear"
    NONE = "none"


# =============================================================================
# Provider results
# =============================================================================

class FaceRectangle(BaseModel):
    top: int = 0
    left: int = 0
    width: int = 0
    height: int = 0


class DetectedFace(BaseModel):
    """A single face found by the provider's detector."""
    model_config = ConfigDict(frozen=True)

    face_token: str = Field(..., min_length=1, description="Provider handle for this face")
    quality: float = Field(..., ge=0, le=100, description="Face quality (0-100, higher is better)")
    blur: float = Field(..., ge=0, le=100, description="Blur level (0-100, higher is blurrier)")
    rectangle: Optional[FaceRectangle] = None


class DetectionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    faces: List[DetectedFace] = Field(default_factory=list)


class SearchCandidate(BaseModel):
    """One ranked hit from an indexed group search."""
    model_config = ConfigDict(frozen=True)

    reference_token: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=100)


# =============================================================================
# Domain snapshots
# =============================================================================

class EnrollmentQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    quality: float = Field(..., ge=0, le=100)
    blur: float = Field(..., ge=0, le=100)


class Identity(BaseModel):
    """Read-only snapshot of an enrolled identity."""
    model_config = ConfigDict(frozen=True)

    identity_id: str
    display_name: str
    reference_token: str
    group_token: Optional[str] = None
    enrollment_quality: EnrollmentQuality
    enrolled_at: datetime
    updated_at: datetime


class VerificationAttempt(BaseModel):
    """Audit record of one verification call. Written once, never changed."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    subject_identity_id: Optional[str] = None
    occurred_at: datetime
    match_confidence: float = Field(default=0.0, ge=0, le=100)
    # transient; never persisted by the audit log
    probe_token: Optional[str] = None
    outcome: VerificationOutcome
    match_path: MatchPath = MatchPath.NONE


# =============================================================================
# Pipeline results
# =============================================================================

class RegistrationResult(BaseModel):
    identity: Identity
    group_token: str = Field(..., description="Group the face was enrolled into")
    group_degraded: bool = Field(
        default=False,
        description="True when group enrollment failed and the default group token was recorded"
    )


class VerificationResult(BaseModel):
    outcome: VerificationOutcome
    identity: Optional[Identity] = None
    confidence: float = 0.0
    match_path: MatchPath = MatchPath.NONE
    face_quality: Optional[float] = None
    message: str = ""
    identity_unresolved: bool = Field(
        default=False,
        description="True when the provider matched a face that no registered identity holds"
    )
    attempt: Optional[VerificationAttempt] = None

    @property
    def success(self) -> bool:
        return self.outcome == VerificationOutcome.SUCCESS


# =============================================================================
# Reporting
# =============================================================================

class AuditStats(BaseModel):
    """Aggregate figures shown on the attendance dashboard."""
    total_identities: int = Field(..., description="Number of enrolled identities")
    today_success: int = Field(..., description="Successful check-ins since local midnight")
    success_rate: float = Field(..., description="Successful attempts as a percentage of all attempts")
    average_confidence: float = Field(..., description="Mean confidence over successful attempts")
    by_outcome: Dict[str, int] = Field(default_factory=dict)


class AttemptRecord(BaseModel):
    id: str
    subject_identity_id: Optional[str] = None
    subject_name: str = "Unknown"
    occurred_at: datetime
    match_confidence: float
    outcome: VerificationOutcome
    match_path: MatchPath


# =============================================================================
# API schemas
# =============================================================================

class IdentityRecord(BaseModel):
    """Schema for an identity in API responses"""
    identity_id: str = Field(..., description="Externally assigned identifier")
    name: str = Field(..., description="Display name")
    enrolled_at: datetime = Field(..., description="Enrollment timestamp")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "identity_id": "E1",
            "name": "Jane Doe",
            "enrolled_at": "2024-01-15T10:30:00"
        }
    })


class IdentityList(BaseModel):
    total_count: int = Field(..., description="Total number of identities")
    identities: List[IdentityRecord] = Field(..., description="Identities, newest first")


class RegistrationResponse(BaseModel):
    success: bool = Field(..., description="Whether the registration succeeded")
    message: str = Field(..., description="Status message")
    identity_id: str
    name: str
    face_quality: float = Field(..., description="Quality score of the enrolled face")
    group_token: str = Field(..., description="Provider group holding the face")


class VerificationResponse(BaseModel):
    success: bool = Field(..., description="Whether the check-in was accepted")
    message: str = Field(..., description="Status message")
    outcome: VerificationOutcome
    identity_id: Optional[str] = None
    name: Optional[str] = None
    confidence: float = Field(..., ge=0, le=100, description="Match confidence (0-100)")
    face_quality: Optional[float] = None
    match_path: MatchPath
    timestamp: datetime

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "success": True,
            "message": "Check-in successful",
            "outcome": "success",
            "identity_id": "E1",
            "name": "Jane Doe",
            "confidence": 92.4,
            "face_quality": 71.2,
            "match_path": "indexed",
            "timestamp": "2024-01-15T08:59:12"
        }
    })


class CheckInLog(BaseModel):
    attempts: List[AttemptRecord]
    stats: AuditStats


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "error": "InputError",
            "detail": "Image is required"
        }
    })
