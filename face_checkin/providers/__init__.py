"""Recognition provider adapters."""
from face_checkin.config import RECOGNITION_PROVIDER
from face_checkin.providers.base import RecognitionProvider


def build_provider(name: str = RECOGNITION_PROVIDER) -> RecognitionProvider:
    """Instantiate the configured provider backend."""
    if name == "facepp":
        from face_checkin.providers.facepp import FacePlusPlusProvider
        return FacePlusPlusProvider()
    if name == "local":
        # Heavy imports (DeepFace, FAISS) only when selected
        from face_checkin.providers.local import LocalFaceProvider
        return LocalFaceProvider()
    raise ValueError(f"Unknown recognition provider '{name}'")


__all__ = ["RecognitionProvider", "build_provider"]
