"""
Face++ Recognition Provider

HTTP client for the Face++ v3 API:
- /facepp/v3/detect            face detection with quality and blur attributes
- /facepp/v3/faceset/addface   add a face token to an existing FaceSet
- /facepp/v3/faceset/create    create a FaceSet holding a face token
- /facepp/v3/faceset/removeface remove a face token from a FaceSet
- /facepp/v3/search            search a face token in a FaceSet
- /facepp/v3/compare           compare two face tokens

Groups are addressed by their FaceSet outer_id, so the configured default
group name works for both enrollment and search.
"""
import logging
from typing import Any, Dict, List, Optional, Type

import requests
from pydantic import BaseModel, Field, ValidationError

from face_checkin.config import (
    FACEPP_API_KEY,
    FACEPP_API_SECRET,
    FACEPP_BASE_URL,
    GROUP_DISPLAY_NAME,
    PROVIDER_TIMEOUT_SECONDS,
)
from face_checkin.exceptions import (
    CompareFailed,
    DetectionFailed,
    GroupOperationFailed,
    NoFaceDetectedError,
    ProviderUnavailable,
    SearchUnavailable,
)
from face_checkin.providers.base import RecognitionProvider
from face_checkin.schemas import (
    DetectedFace,
    DetectionResult,
    FaceRectangle,
    SearchCandidate,
)

logger = logging.getLogger(__name__)

# Face++ returns at most 5 candidates per search
SEARCH_RESULT_COUNT = 5


# =============================================================================
# Raw Face++ payloads
# =============================================================================

class _AttributeValue(BaseModel):
    value: float = 0.0


class _Blur(BaseModel):
    blurness: _AttributeValue = Field(default_factory=_AttributeValue)


class _Attributes(BaseModel):
    facequality: _AttributeValue = Field(default_factory=_AttributeValue)
    blur: _Blur = Field(default_factory=_Blur)


class _Face(BaseModel):
    face_token: str
    face_rectangle: Optional[FaceRectangle] = None
    attributes: _Attributes = Field(default_factory=_Attributes)


class _DetectResponse(BaseModel):
    faces: List[_Face] = Field(default_factory=list)


class _FaceSetResponse(BaseModel):
    faceset_token: Optional[str] = None
    outer_id: Optional[str] = None
    face_added: int = 0
    face_removed: int = 0


class _SearchHit(BaseModel):
    face_token: str
    confidence: float


class _SearchResponse(BaseModel):
    results: List[_SearchHit] = Field(default_factory=list)


class _CompareResponse(BaseModel):
    confidence: float


class FacePlusPlusProvider(RecognitionProvider):
    """
    Recognition provider backed by the Face++ cloud API.

    Every request carries a bounded timeout. Transport errors, Face++
    error_message payloads and malformed responses are raised as the
    operation's typed failure.
    """

    name = "facepp"

    def __init__(
        self,
        api_key: str = FACEPP_API_KEY,
        api_secret: str = FACEPP_API_SECRET,
        base_url: str = FACEPP_BASE_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        group_display_name: str = GROUP_DISPLAY_NAME,
        session: Optional[requests.Session] = None
    ):
        if not api_key or not api_secret:
            raise ValueError("Face++ API credentials are not configured (FACEPP_API_KEY, FACEPP_API_SECRET)")
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.group_display_name = group_display_name
        self._session = session or requests.Session()

    def _post(
        self,
        path: str,
        data: Dict[str, Any],
        response_model: Type[BaseModel],
        error: Type[ProviderUnavailable],
        operation: str,
        files: Optional[Dict[str, Any]] = None
    ):
        """POST to Face++ and validate the JSON answer into response_model."""
        payload = {"api_key": self.api_key, "api_secret": self.api_secret, **data}
        url = f"{self.base_url}{path}"

        try:
            response = self._session.post(url, data=payload, files=files, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise error(f"{operation} failed: Request timeout. Please try again.") from e
        except requests.exceptions.RequestException as e:
            raise error(f"{operation} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise error(f"{operation} failed: non-JSON response (HTTP {response.status_code})") from e

        if not isinstance(body, dict):
            raise error(f"{operation} failed: unexpected response shape")
        if body.get("error_message"):
            raise error(f"{operation} failed: {body['error_message']}")
        if not response.ok:
            raise error(f"{operation} failed: HTTP {response.status_code}")

        try:
            return response_model.model_validate(body)
        except ValidationError as e:
            raise error(f"{operation} failed: malformed response: {e}") from e

    def detect(self, image_bytes: bytes) -> DetectionResult:
        result = self._post(
            "/facepp/v3/detect",
            {"return_attributes": "facequality,blur"},
            _DetectResponse,
            DetectionFailed,
            "Face detection",
            files={"image_file": ("capture.jpg", image_bytes)}
        )

        if not result.faces:
            raise NoFaceDetectedError(
                "No faces detected in the image. Please ensure your face is clearly visible."
            )

        try:
            faces = [
                DetectedFace(
                    face_token=face.face_token,
                    quality=face.attributes.facequality.value,
                    blur=face.attributes.blur.blurness.value,
                    rectangle=face.face_rectangle
                )
                for face in result.faces
            ]
        except ValidationError as e:
            raise DetectionFailed(f"Face detection failed: malformed face attributes: {e}") from e

        logger.debug(f"Face++ detected {len(faces)} face(s)")
        return DetectionResult(faces=faces)

    def enroll(self, reference_token: str, group_token: Optional[str] = None) -> str:
        if group_token:
            try:
                self._post(
                    "/facepp/v3/faceset/addface",
                    {"outer_id": group_token, "face_tokens": reference_token},
                    _FaceSetResponse,
                    GroupOperationFailed,
                    "FaceSet operation"
                )
                return group_token
            except GroupOperationFailed as e:
                logger.info(f"Adding to FaceSet '{group_token}' failed, creating it: {e}")

        data = {"display_name": self.group_display_name, "face_tokens": reference_token}
        if group_token:
            data["outer_id"] = group_token
        created = self._post(
            "/facepp/v3/faceset/create",
            data,
            _FaceSetResponse,
            GroupOperationFailed,
            "FaceSet operation"
        )

        token = group_token or created.faceset_token
        if not token:
            raise GroupOperationFailed("FaceSet operation failed: no faceset token returned")
        logger.info(f"Created FaceSet '{token}'")
        return token

    def remove(self, reference_token: str, group_token: str) -> None:
        result = self._post(
            "/facepp/v3/faceset/removeface",
            {"outer_id": group_token, "face_tokens": reference_token},
            _FaceSetResponse,
            GroupOperationFailed,
            "FaceSet operation"
        )
        logger.info(f"Removed {result.face_removed} face(s) from FaceSet '{group_token}'")

    def search_in_group(self, probe_token: str, group_token: str) -> List[SearchCandidate]:
        result = self._post(
            "/facepp/v3/search",
            {
                "face_token": probe_token,
                "outer_id": group_token,
                "return_result_count": SEARCH_RESULT_COUNT
            },
            _SearchResponse,
            SearchUnavailable,
            "Face search"
        )

        try:
            candidates = [
                SearchCandidate(reference_token=hit.face_token, confidence=hit.confidence)
                for hit in result.results
            ]
        except ValidationError as e:
            raise SearchUnavailable(f"Face search failed: malformed result: {e}") from e

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def compare(self, token_a: str, token_b: str) -> float:
        result = self._post(
            "/facepp/v3/compare",
            {"face_token1": token_a, "face_token2": token_b},
            _CompareResponse,
            CompareFailed,
            "Face comparison"
        )
        if not 0 <= result.confidence <= 100:
            raise CompareFailed(f"Face comparison failed: confidence out of range: {result.confidence}")
        return result.confidence
