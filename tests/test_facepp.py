import pytest
import requests

from face_checkin.exceptions import (
    CompareFailed,
    DetectionFailed,
    GroupOperationFailed,
    NoFaceDetectedError,
    SearchUnavailable,
)
from face_checkin.providers.facepp import FacePlusPlusProvider


class FakeResponse:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """Replays queued responses (or raises queued exceptions) per URL path."""

    def __init__(self):
        self.replies = {}
        self.requests = []

    def queue(self, path, reply):
        self.replies.setdefault(path, []).append(reply)

    def post(self, url, data=None, files=None, timeout=None):
        path = url.split("faceplusplus.test", 1)[1]
        self.requests.append({"path": path, "data": data, "files": files, "timeout": timeout})
        reply = self.replies[path].pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def facepp(session):
    return FacePlusPlusProvider(
        api_key="key",
        api_secret="secret",
        base_url="https://faceplusplus.test/",
        timeout=30,
        session=session
    )


def _face(token, quality=72.5, blur=12.0):
    return {
        "face_token": token,
        "face_rectangle": {"top": 10, "left": 20, "width": 100, "height": 120},
        "attributes": {
            "facequality": {"value": quality, "threshold": 70.1},
            "blur": {"blurness": {"value": blur, "threshold": 50}},
        },
    }


def test_requires_credentials():
    with pytest.raises(ValueError):
        FacePlusPlusProvider(api_key="", api_secret="")


def test_detect_parses_faces(facepp, session):
    session.queue("/facepp/v3/detect", FakeResponse({"faces": [_face("t1"), _face("t2", 30, 90)]}))

    result = facepp.detect(b"jpeg")

    assert [f.face_token for f in result.faces] == ["t1", "t2"]
    assert result.faces[0].quality == 72.5
    assert result.faces[1].blur == 90
    assert result.faces[0].rectangle.width == 100

    sent = session.requests[0]
    assert sent["data"]["api_key"] == "key"
    assert sent["data"]["return_attributes"] == "facequality,blur"
    assert sent["files"]["image_file"][1] == b"jpeg"
    assert sent["timeout"] == 30


def test_detect_missing_attributes_default_to_zero(facepp, session):
    session.queue("/facepp/v3/detect", FakeResponse({"faces": [{"face_token": "t1"}]}))

    face = facepp.detect(b"jpeg").faces[0]
    assert face.quality == 0
    assert face.blur == 0


def test_detect_no_faces(facepp, session):
    session.queue("/facepp/v3/detect", FakeResponse({"faces": []}))

    with pytest.raises(NoFaceDetectedError):
        facepp.detect(b"jpeg")


@pytest.mark.parametrize(
    "reply",
    [
        requests.exceptions.Timeout("slow"),
        requests.exceptions.ConnectionError("refused"),
        FakeResponse({"error_message": "INVALID_IMAGE_SIZE: image_file"}, status_code=400),
        FakeResponse(ValueError("not json"), status_code=502),
        FakeResponse({"faces": [{"no_token": True}]}),
        FakeResponse({"faces": [_face("t1", quality=250)]}),
    ],
)
def test_detect_failures_are_typed(facepp, session, reply):
    session.queue("/facepp/v3/detect", reply)

    with pytest.raises(DetectionFailed) as exc_info:
        facepp.detect(b"jpeg")
    assert not isinstance(exc_info.value, NoFaceDetectedError)


def test_timeout_message(facepp, session):
    session.queue("/facepp/v3/detect", requests.exceptions.Timeout("slow"))

    with pytest.raises(DetectionFailed, match="Request timeout"):
        facepp.detect(b"jpeg")


def test_enroll_adds_to_existing_group(facepp, session):
    session.queue("/facepp/v3/faceset/addface", FakeResponse({"faceset_token": "fs-1", "face_added": 1}))

    assert facepp.enroll("tok", "employee_faceset") == "employee_faceset"
    assert session.requests[0]["data"]["outer_id"] == "employee_faceset"
    assert session.requests[0]["data"]["face_tokens"] == "tok"


def test_enroll_creates_group_when_add_fails(facepp, session):
    session.queue("/facepp/v3/faceset/addface", FakeResponse({"error_message": "INVALID_OUTER_ID"}, 400))
    session.queue("/facepp/v3/faceset/create", FakeResponse({"faceset_token": "fs-new", "outer_id": "employee_faceset"}))

    assert facepp.enroll("tok", "employee_faceset") == "employee_faceset"
    create = session.requests[1]
    assert create["path"] == "/facepp/v3/faceset/create"
    assert create["data"]["outer_id"] == "employee_faceset"
    assert create["data"]["display_name"] == "Employee_FaceSet"


def test_enroll_without_group_returns_created_token(facepp, session):
    session.queue("/facepp/v3/faceset/create", FakeResponse({"faceset_token": "fs-new"}))

    assert facepp.enroll("tok") == "fs-new"
    assert "outer_id" not in session.requests[0]["data"]


def test_enroll_fails_when_create_fails(facepp, session):
    session.queue("/facepp/v3/faceset/addface", requests.exceptions.ConnectionError("down"))
    session.queue("/facepp/v3/faceset/create", requests.exceptions.ConnectionError("down"))

    with pytest.raises(GroupOperationFailed):
        facepp.enroll("tok", "employee_faceset")


def test_remove_face_from_group(facepp, session):
    session.queue("/facepp/v3/faceset/removeface", FakeResponse({"faceset_token": "fs-1", "face_removed": 1}))

    facepp.remove("tokOld", "employee_faceset")

    sent = session.requests[0]
    assert sent["path"] == "/facepp/v3/faceset/removeface"
    assert sent["data"]["outer_id"] == "employee_faceset"
    assert sent["data"]["face_tokens"] == "tokOld"


def test_remove_failure_is_group_error(facepp, session):
    session.queue("/facepp/v3/faceset/removeface", FakeResponse({"error_message": "INVALID_OUTER_ID"}, 400))

    with pytest.raises(GroupOperationFailed, match="INVALID_OUTER_ID"):
        facepp.remove("tokOld", "employee_faceset")


def test_search_ranks_results(facepp, session):
    session.queue("/facepp/v3/search", FakeResponse({
        "results": [
            {"face_token": "a", "confidence": 61.2, "user_id": ""},
            {"face_token": "b", "confidence": 93.1, "user_id": ""},
        ]
    }))

    candidates = facepp.search_in_group("probe", "employee_faceset")

    assert [(c.reference_token, c.confidence) for c in candidates] == [("b", 93.1), ("a", 61.2)]
    assert session.requests[0]["data"]["outer_id"] == "employee_faceset"
    assert session.requests[0]["data"]["face_token"] == "probe"


def test_search_empty_results(facepp, session):
    session.queue("/facepp/v3/search", FakeResponse({"results": []}))
    assert facepp.search_in_group("probe", "employee_faceset") == []


def test_search_error_is_search_unavailable(facepp, session):
    session.queue("/facepp/v3/search", FakeResponse({"error_message": "CONCURRENCY_LIMIT_EXCEEDED"}, 403))

    with pytest.raises(SearchUnavailable, match="CONCURRENCY_LIMIT_EXCEEDED"):
        facepp.search_in_group("probe", "employee_faceset")


def test_compare(facepp, session):
    session.queue("/facepp/v3/compare", FakeResponse({"confidence": 87.4, "thresholds": {"1e-3": 62.3}}))

    assert facepp.compare("a", "b") == 87.4
    assert session.requests[0]["data"]["face_token1"] == "a"
    assert session.requests[0]["data"]["face_token2"] == "b"


@pytest.mark.parametrize(
    "reply",
    [
        FakeResponse({"thresholds": {}}),
        FakeResponse({"confidence": 140}),
        FakeResponse({"error_message": "INVALID_FACE_TOKEN"}, 400),
        requests.exceptions.Timeout("slow"),
    ],
)
def test_compare_failures(facepp, session, reply):
    session.queue("/facepp/v3/compare", reply)

    with pytest.raises(CompareFailed):
        facepp.compare("a", "b")
