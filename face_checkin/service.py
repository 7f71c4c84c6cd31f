"""
Check-In Service

Orchestrates the two inbound flows:

Registration: capture -> detect -> quality gate (enrollment) -> provider
group enrollment -> registry insert

Verification: capture -> detect -> quality gate (verification) -> matcher
-> audit record -> result

Every verification that gets past input validation produces exactly one
audit record whose outcome equals the returned outcome.
"""
import logging
import time
from typing import Optional

from face_checkin.config import DEFAULT_GROUP_TOKEN, PROVIDER_TIMEOUT_SECONDS
from face_checkin.audit import AuditLogger
from face_checkin.exceptions import (
    CaptureRejected,
    DetectionFailed,
    DuplicateIdentityError,
    GroupOperationFailed,
    IdentityNotFoundError,
    InputError,
    NoFaceDetectedError,
    ProviderUnavailable,
)
from face_checkin.matcher import MatchDecision, Matcher
from face_checkin.models import utc_now
from face_checkin.providers.base import RecognitionProvider, call_provider
from face_checkin.quality import (
    NO_FACE_MESSAGE,
    GatePurpose,
    QualityThresholds,
    assess,
)
from face_checkin.registry import IdentityRegistry
from face_checkin.schemas import (
    DetectedFace,
    EnrollmentQuality,
    Identity,
    RegistrationResult,
    VerificationAttempt,
    VerificationOutcome,
    VerificationResult,
)

logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    VerificationOutcome.SUCCESS: "Check-in successful",
    VerificationOutcome.NOT_RECOGNIZED: "Employee not recognized. Please ensure you are registered and try again.",
    VerificationOutcome.LOW_CONFIDENCE: "Face recognition confidence too low. Please try again.",
    VerificationOutcome.PROVIDER_ERROR: "Face recognition is currently unavailable. Please try again.",
}


class CheckInService:
    """
    Entry point used by the HTTP layer.

    Args:
        provider: recognition provider
        registry: identity registry
        audit: audit logger
        matcher: decision engine; built from provider and registry if omitted
        thresholds: quality gate thresholds
        default_group: group every face is enrolled into
        timeout: deadline for each provider call, in seconds
    """

    def __init__(
        self,
        provider: RecognitionProvider,
        registry: IdentityRegistry,
        audit: AuditLogger,
        matcher: Optional[Matcher] = None,
        thresholds: QualityThresholds = QualityThresholds(),
        default_group: str = DEFAULT_GROUP_TOKEN,
        timeout: float = PROVIDER_TIMEOUT_SECONDS
    ):
        self.provider = provider
        self.registry = registry
        self.audit = audit
        self.thresholds = thresholds
        self.default_group = default_group
        self.timeout = timeout
        self.matcher = matcher or Matcher(
            provider,
            registry,
            default_group=default_group,
            timeout=timeout
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, identity_id: str, name: str, image_bytes: bytes) -> RegistrationResult:
        """
        Enroll a new identity from a single-face capture.

        Raises:
            InputError: missing fields or empty image
            CaptureRejected: no face, several faces, low quality or too blurry
            DuplicateIdentityError: identity_id is already enrolled
            ProviderUnavailable: face detection failed
        """
        start_time = time.time()
        identity_id = (identity_id or "").strip()
        name = (name or "").strip()
        if not identity_id or not name:
            raise InputError("Missing required fields")
        if not image_bytes:
            raise InputError("Image is required")

        if await self.registry.get(identity_id) is not None:
            raise DuplicateIdentityError(identity_id)

        face = await self._detect_for_enrollment(image_bytes)
        group_token, degraded = await self._enroll_in_group(face.face_token)

        try:
            identity = await self.registry.register(
                identity_id,
                name,
                face.face_token,
                EnrollmentQuality(quality=face.quality, blur=face.blur),
                group_token=group_token
            )
        except DuplicateIdentityError:
            await self._retire_unclaimed(face.face_token, group_token)
            raise

        processing_time = (time.time() - start_time) * 1000
        logger.info(
            f"Registered {identity_id} ('{name}') quality={face.quality:.1f} "
            f"blur={face.blur:.1f} group={group_token} in {processing_time:.1f}ms"
        )
        return RegistrationResult(identity=identity, group_token=group_token, group_degraded=degraded)

    async def rotate(self, identity_id: str, image_bytes: bytes) -> Identity:
        """
        Replace an identity's reference face with a new capture.

        The previous face leaves its group once the registry holds the new
        token, so indexed search cannot return a token nobody owns.

        Raises:
            IdentityNotFoundError: identity_id is not enrolled
            plus the capture errors of register()
        """
        if not image_bytes:
            raise InputError("Image is required")
        current = await self.registry.get(identity_id)
        if current is None:
            raise IdentityNotFoundError(identity_id)

        face = await self._detect_for_enrollment(image_bytes)
        group_token, _ = await self._enroll_in_group(face.face_token)
        try:
            identity = await self.registry.rotate_token(
                identity_id,
                face.face_token,
                EnrollmentQuality(quality=face.quality, blur=face.blur),
                group_token=group_token
            )
        except (IdentityNotFoundError, DuplicateIdentityError):
            await self._retire_unclaimed(face.face_token, group_token)
            raise

        if current.reference_token != identity.reference_token:
            await self._retire_face(current.reference_token, current.group_token or self.default_group)
        return identity

    async def _detect_for_enrollment(self, image_bytes: bytes) -> DetectedFace:
        try:
            detection = await call_provider(
                self.provider.detect, image_bytes, timeout=self.timeout, error=DetectionFailed
            )
        except NoFaceDetectedError as e:
            raise CaptureRejected(VerificationOutcome.NO_FACE_DETECTED, NO_FACE_MESSAGE) from e

        verdict = assess(detection.faces, GatePurpose.ENROLLMENT, self.thresholds)
        if not verdict.accepted:
            raise CaptureRejected(verdict.outcome, verdict.message)
        return verdict.face

    async def _enroll_in_group(self, reference_token: str):
        """Join the default group; on provider failure record the default token."""
        try:
            group_token = await call_provider(
                self.provider.enroll,
                reference_token,
                self.default_group,
                timeout=self.timeout,
                error=GroupOperationFailed
            )
            return group_token, False
        except ProviderUnavailable as e:
            logger.error(f"Group enrollment failed, continuing with default group '{self.default_group}': {e}")
            return self.default_group, True

    async def _retire_face(self, reference_token: str, group_token: str):
        """Take a face out of its group. A failure leaves a stale group entry and is only logged."""
        try:
            await call_provider(
                self.provider.remove,
                reference_token,
                group_token,
                timeout=self.timeout,
                error=GroupOperationFailed
            )
        except ProviderUnavailable as e:
            logger.warning(f"Could not remove face {reference_token} from group '{group_token}': {e}")

    async def _retire_unclaimed(self, reference_token: str, group_token: str):
        """Undo a group enrollment whose registry write was refused."""
        if await self.registry.find_by_token(reference_token) is None:
            await self._retire_face(reference_token, group_token)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(self, image_bytes: bytes) -> VerificationResult:
        """
        Decide who is in the capture and record the attempt.

        Raises:
            InputError: empty image (rejected before any attempt is made)
        """
        if not image_bytes:
            raise InputError("Image is required")

        start_time = time.time()
        face: Optional[DetectedFace] = None
        face_quality: Optional[float] = None
        decision: Optional[MatchDecision] = None
        message = ""

        try:
            detection = await call_provider(
                self.provider.detect, image_bytes, timeout=self.timeout, error=DetectionFailed
            )
        except NoFaceDetectedError:
            decision = MatchDecision(VerificationOutcome.NO_FACE_DETECTED)
            message = NO_FACE_MESSAGE
        except ProviderUnavailable as e:
            logger.error(f"Face detection failed: {e}")
            decision = MatchDecision(VerificationOutcome.PROVIDER_ERROR)
        else:
            verdict = assess(detection.faces, GatePurpose.VERIFICATION, self.thresholds)
            face = verdict.face
            face_quality = face.quality if face else None
            if not verdict.accepted:
                decision = MatchDecision(verdict.outcome)
                message = verdict.message

        if decision is None:
            try:
                decision = await self.matcher.verify(face.face_token)
            except Exception as e:
                logger.exception(f"Matching failed unexpectedly: {e}")
                decision = MatchDecision(VerificationOutcome.PROVIDER_ERROR)

        attempt = await self.audit.record(VerificationAttempt(
            subject_identity_id=decision.identity.identity_id if decision.identity else None,
            occurred_at=utc_now(),
            match_confidence=decision.confidence,
            probe_token=face.face_token if face else None,
            outcome=decision.outcome,
            match_path=decision.path
        ))

        processing_time = (time.time() - start_time) * 1000
        logger.info(f"Verification {decision.outcome.value} in {processing_time:.1f}ms")

        return VerificationResult(
            outcome=decision.outcome,
            identity=decision.identity,
            confidence=decision.confidence,
            match_path=decision.path,
            face_quality=face_quality,
            message=message or decision.detail or OUTCOME_MESSAGES[decision.outcome],
            identity_unresolved=decision.unresolved,
            attempt=attempt
        )
