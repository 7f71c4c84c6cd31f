from __future__ import annotations

import os
import time
from typing import Dict, List, Optional, Tuple

import pytest

# Must be set before face_checkin.database creates its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from face_checkin.audit import AuditLogger
from face_checkin.database import build_engine, build_session_maker, init_db
from face_checkin.exceptions import CompareFailed, NoFaceDetectedError
from face_checkin.matcher import Matcher
from face_checkin.providers.base import RecognitionProvider
from face_checkin.registry import IdentityRegistry
from face_checkin.schemas import DetectedFace, DetectionResult, EnrollmentQuality, SearchCandidate
from face_checkin.service import CheckInService


def make_face(token: str = "probe", quality: float = 70.0, blur: float = 20.0) -> DetectedFace:
    return DetectedFace(face_token=token, quality=quality, blur=blur)


class FakeProvider(RecognitionProvider):
    """Scriptable provider that records every call."""

    name = "fake"

    def __init__(self):
        self.faces: List[DetectedFace] = [make_face()]
        self.detect_error: Optional[Exception] = None
        self.enroll_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.groups: Dict[str, List[str]] = {}
        # when set, search ranks the group's members by `scores` instead of search_results
        self.rank_group_members = False
        self.search_results: List[Tuple[str, float]] = []
        self.search_error: Optional[Exception] = None
        self.search_delay: float = 0.0
        self.scores: Dict[str, float] = {}
        self.failing_compares: set = set()
        self.calls: List[Tuple[str, tuple]] = []

    def calls_to(self, operation: str) -> List[tuple]:
        return [args for name, args in self.calls if name == operation]

    def detect(self, image_bytes: bytes) -> DetectionResult:
        self.calls.append(("detect", (image_bytes,)))
        if self.detect_error is not None:
            raise self.detect_error
        if not self.faces:
            raise NoFaceDetectedError("no faces")
        return DetectionResult(faces=self.faces)

    def enroll(self, reference_token: str, group_token: Optional[str] = None) -> str:
        self.calls.append(("enroll", (reference_token, group_token)))
        if self.enroll_error is not None:
            raise self.enroll_error
        group = group_token or "created-group"
        self.groups.setdefault(group, []).append(reference_token)
        return group

    def remove(self, reference_token: str, group_token: str) -> None:
        self.calls.append(("remove", (reference_token, group_token)))
        if self.remove_error is not None:
            raise self.remove_error
        members = self.groups.get(group_token, [])
        if reference_token in members:
            members.remove(reference_token)

    def search_in_group(self, probe_token: str, group_token: str) -> List[SearchCandidate]:
        self.calls.append(("search", (probe_token, group_token)))
        if self.search_delay:
            time.sleep(self.search_delay)
        if self.search_error is not None:
            raise self.search_error
        if self.rank_group_members:
            ranked = sorted(self.groups.get(group_token, []), key=lambda t: self.scores.get(t, 0), reverse=True)
            return [SearchCandidate(reference_token=t, confidence=self.scores.get(t, 0)) for t in ranked]
        return [SearchCandidate(reference_token=t, confidence=c) for t, c in self.search_results]

    def compare(self, token_a: str, token_b: str) -> float:
        self.calls.append(("compare", (token_a, token_b)))
        if token_b in self.failing_compares:
            raise CompareFailed(f"compare failed for {token_b}")
        if token_b not in self.scores:
            raise CompareFailed(f"unknown token {token_b}")
        return self.scores[token_b]


@pytest.fixture
async def session_maker():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def registry(session_maker) -> IdentityRegistry:
    return IdentityRegistry(session_maker)


@pytest.fixture
def audit(session_maker) -> AuditLogger:
    return AuditLogger(session_maker)


@pytest.fixture
def matcher(provider, registry) -> Matcher:
    return Matcher(provider, registry, default_group="test-group", timeout=5)


@pytest.fixture
def service(provider, registry, audit, matcher) -> CheckInService:
    return CheckInService(provider, registry, audit, matcher=matcher, default_group="test-group", timeout=5)


@pytest.fixture
def enroll(registry):
    """Register identities directly, in the given order."""
    async def _enroll(*identity_ids: str):
        identities = []
        for identity_id in identity_ids:
            identities.append(await registry.register(
                identity_id,
                f"Name {identity_id}",
                f"token{identity_id}",
                EnrollmentQuality(quality=70, blur=20),
                group_token="test-group"
            ))
        return identities
    return _enroll

