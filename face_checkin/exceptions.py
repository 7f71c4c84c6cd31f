"""
Error taxonomy for the check-in pipeline.

InputError        - user-correctable capture problems (empty image, blank fields)
NotFoundError     - registry and provider disagree about a token
ProviderUnavailable - recognition provider timed out, failed or answered garbage
DuplicateError    - enrollment of an identifier that is already known
"""


class CheckInError(Exception):
    """Base class for all check-in errors."""


class InputError(CheckInError):
    """The caller supplied an unusable capture or missing fields."""


class NotFoundError(CheckInError):
    """A record expected to exist is missing."""


class IdentityNotFoundError(NotFoundError):
    def __init__(self, identity_id: str):
        super().__init__(f"Identity '{identity_id}' not found")
        self.identity_id = identity_id


class DuplicateError(CheckInError):
    """The record being created already exists."""


class DuplicateIdentityError(DuplicateError):
    def __init__(self, identity_id: str, detail: str = ""):
        message = f"Identity '{identity_id}' already exists"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.identity_id = identity_id


class ProviderUnavailable(CheckInError):
    """The recognition provider could not complete an operation."""


class DetectionFailed(ProviderUnavailable):
    """Face detection errored, timed out, or found no face."""


class NoFaceDetectedError(DetectionFailed):
    """Detection ran successfully but the image holds no face."""


class GroupOperationFailed(ProviderUnavailable):
    """Creating a group or adding a face to it failed."""


class SearchUnavailable(ProviderUnavailable):
    """Indexed search in a group could not be executed."""


class CompareFailed(ProviderUnavailable):
    """Pairwise comparison of two faces failed."""


class CaptureRejected(InputError):
    """The capture failed the quality gate (no face, several faces, low quality)."""

    def __init__(self, outcome, message: str):
        super().__init__(message)
        self.outcome = outcome
