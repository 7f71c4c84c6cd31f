"""
Recognition provider contract.

The decision pipeline only talks to this interface. Implementations
translate every transport, timeout and payload problem into the typed
failures of face_checkin.exceptions and return validated pydantic models.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Type, TypeVar

from face_checkin.config import PROVIDER_TIMEOUT_SECONDS
from face_checkin.exceptions import ProviderUnavailable
from face_checkin.schemas import DetectionResult, SearchCandidate

T = TypeVar("T")


class RecognitionProvider(ABC):
    """Stateless facade over a face recognition capability."""

    name: str = "provider"

    @abstractmethod
    def detect(self, image_bytes: bytes) -> DetectionResult:
        """
        Detect faces in an encoded image.

        Raises:
            NoFaceDetectedError: the image holds no face
            DetectionFailed: the provider errored or timed out
        """

    @abstractmethod
    def enroll(self, reference_token: str, group_token: Optional[str] = None) -> str:
        """
        Add a detected face to a matching group, creating the group if needed.

        Returns:
            Token of the group now holding the face

        Raises:
            GroupOperationFailed: neither adding nor creating succeeded
        """

    @abstractmethod
    def remove(self, reference_token: str, group_token: str) -> None:
        """
        Take a face out of a group. A face the group does not hold is ignored.

        Raises:
            GroupOperationFailed: the group could not be updated
        """

    @abstractmethod
    def search_in_group(self, probe_token: str, group_token: str) -> List[SearchCandidate]:
        """
        Rank the group's faces against the probe, best first.

        Raises:
            SearchUnavailable: the search could not be executed
        """

    @abstractmethod
    def compare(self, token_a: str, token_b: str) -> float:
        """
        Confidence (0-100) that two faces belong to the same person.

        Raises:
            CompareFailed: the comparison could not be executed
        """


async def call_provider(
    operation: Callable[..., T],
    *args,
    timeout: float = PROVIDER_TIMEOUT_SECONDS,
    error: Type[ProviderUnavailable] = ProviderUnavailable
) -> T:
    """
    Run a blocking provider operation in a worker thread with a deadline.

    A call still running after `timeout` seconds is abandoned and reported
    as `error`. Typed provider failures propagate unchanged; anything else
    the provider lets escape is wrapped in `error`.
    """
    name = getattr(operation, "__name__", "provider call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(operation, *args), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise error(f"{name} timed out after {timeout:.0f}s") from e
    except ProviderUnavailable:
        raise
    except Exception as e:
        raise error(f"{name} failed: {e}") from e
