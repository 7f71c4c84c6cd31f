"""
SQLAlchemy ORM Models for the Check-In Database

identities            - one row per enrolled person, owned by the registry
verification_attempts - append-only audit log, one row per verification call
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Uuid

from face_checkin.database import Base
from face_checkin.schemas import (
    EnrollmentQuality,
    Identity,
    MatchPath,
    VerificationAttempt,
    VerificationOutcome,
)


def utc_now() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IdentityDB(Base):
    """
    SQLAlchemy model for the identities table.

    The autoincrement primary key records insertion order and breaks ties
    between identities enrolled within the same timestamp.
    """
    __tablename__ = "identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    identity_id = Column(String(128), nullable=False, unique=True, index=True)
    display_name = Column(Text, nullable=False)
    reference_token = Column(String(255), nullable=False, unique=True, index=True)
    group_token = Column(String(255), nullable=True)
    quality_score = Column(Float, nullable=False)
    blur_score = Column(Float, nullable=False)
    enrolled_at = Column(DateTime, default=utc_now, nullable=False, index=True)
    updated_at = Column(DateTime, default=utc_now, nullable=False)

    def __repr__(self):
        return f"<IdentityDB(identity_id='{self.identity_id}', display_name='{self.display_name}')>"

    def to_schema(self) -> Identity:
        """Detach into an immutable snapshot."""
        return Identity(
            identity_id=self.identity_id,
            display_name=self.display_name,
            reference_token=self.reference_token,
            group_token=self.group_token,
            enrollment_quality=EnrollmentQuality(
                quality=self.quality_score,
                blur=self.blur_score
            ),
            enrolled_at=self.enrolled_at,
            updated_at=self.updated_at
        )


class VerificationAttemptDB(Base):
    """SQLAlchemy model for the verification_attempts table."""
    __tablename__ = "verification_attempts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subject_identity_id = Column(String(128), nullable=True, index=True)
    occurred_at = Column(DateTime, nullable=False, index=True)
    match_confidence = Column(Float, nullable=False, default=0.0)
    outcome = Column(String(32), nullable=False, index=True)
    match_path = Column(String(16), nullable=False, default=MatchPath.NONE.value)

    def __repr__(self):
        return f"<VerificationAttemptDB(id={self.id}, outcome='{self.outcome}')>"

    def to_schema(self) -> VerificationAttempt:
        return VerificationAttempt(
            id=str(self.id),
            subject_identity_id=self.subject_identity_id,
            occurred_at=self.occurred_at,
            match_confidence=self.match_confidence,
            outcome=VerificationOutcome(self.outcome),
            match_path=MatchPath(self.match_path)
        )
