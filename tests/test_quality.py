import pytest

from face_checkin.quality import GatePurpose, QualityThresholds, assess
from face_checkin.schemas import VerificationOutcome

from conftest import make_face


@pytest.mark.parametrize("purpose", list(GatePurpose))
def test_no_face_rejected(purpose):
    verdict = assess([], purpose)
    assert not verdict.accepted
    assert verdict.outcome == VerificationOutcome.NO_FACE_DETECTED
    assert verdict.face is None


@pytest.mark.parametrize("purpose", list(GatePurpose))
def test_multiple_faces_rejected(purpose):
    verdict = assess([make_face("a"), make_face("b")], purpose)
    assert not verdict.accepted
    assert verdict.outcome == VerificationOutcome.MULTIPLE_FACES_DETECTED


def test_face_count_checked_before_quality():
    verdict = assess([make_face("a", quality=5), make_face("b", quality=5)], GatePurpose.VERIFICATION)
    assert verdict.outcome == VerificationOutcome.MULTIPLE_FACES_DETECTED


@pytest.mark.parametrize(
    "purpose,quality,accepted",
    [
        (GatePurpose.VERIFICATION, 39.9, False),
        (GatePurpose.VERIFICATION, 40, True),
        (GatePurpose.ENROLLMENT, 49.9, False),
        (GatePurpose.ENROLLMENT, 50, True),
    ],
)
def test_minimum_quality_per_purpose(purpose, quality, accepted):
    verdict = assess([make_face(quality=quality)], purpose)
    assert verdict.accepted is accepted
    if not accepted:
        assert verdict.outcome == VerificationOutcome.LOW_QUALITY


def test_blur_only_limits_enrollment():
    blurry = make_face(quality=90, blur=81)

    enrollment = assess([blurry], GatePurpose.ENROLLMENT)
    assert not enrollment.accepted
    assert enrollment.outcome == VerificationOutcome.LOW_QUALITY
    assert "blurry" in enrollment.message

    assert assess([blurry], GatePurpose.VERIFICATION).accepted
    assert assess([make_face(quality=90, blur=80)], GatePurpose.ENROLLMENT).accepted


def test_custom_thresholds():
    strict = QualityThresholds(enrollment_min_quality=90, verification_min_quality=60, enrollment_max_blur=10)
    face = make_face(quality=70, blur=20)

    assert not assess([face], GatePurpose.ENROLLMENT, strict).accepted
    assert assess([face], GatePurpose.VERIFICATION, strict).accepted


def test_accepted_verdict_carries_face():
    face = make_face("tok", quality=70, blur=20)
    verdict = assess([face], GatePurpose.ENROLLMENT)
    assert verdict.accepted
    assert verdict.outcome is None
    assert verdict.face == face
