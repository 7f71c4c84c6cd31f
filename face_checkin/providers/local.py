"""
Local Recognition Provider using DeepFace and FAISS

Runs the recognition capability in-process:
- Face detection and alignment with RetinaFace
- Embedding generation with ArcFace
- One FAISS inner-product index per group for indexed search
- Persistence of every group (index + token list) under GROUPS_DIR

Probe embeddings are kept in a bounded in-memory cache keyed by their face
token, so a probe token is only usable for a short while after detection.
"""
import json
import logging
import threading
import uuid
from collections import OrderedDict
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

import cv2
import faiss
import numpy as np
from PIL import Image
from deepface import DeepFace

from face_checkin.config import (
    DEFAULT_GROUP_TOKEN,
    EMBEDDING_DIM,
    FACE_DETECTOR_BACKEND,
    FACE_RECOGNITION_MODEL,
    GROUPS_DIR,
    MAX_IMAGE_SIZE,
    SHARP_LAPLACIAN_VARIANCE,
)
from face_checkin.exceptions import (
    CompareFailed,
    DetectionFailed,
    GroupOperationFailed,
    NoFaceDetectedError,
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

PROBE_CACHE_SIZE = 256
TOP_K_MATCHES = 5


def blur_score(face_array: np.ndarray, sharp_variance: float = SHARP_LAPLACIAN_VARIANCE) -> float:
    """
    Map Laplacian variance onto a 0-100 blur scale (higher = blurrier).

    Variance at or above sharp_variance scores 0.
    """
    if face_array.ndim == 3:
        gray = cv2.cvtColor(face_array, cv2.COLOR_RGB2GRAY)
    else:
        gray = face_array
    variance = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    sharpness = min(variance / sharp_variance, 1.0)
    return round((1.0 - sharpness) * 100, 2)


def _to_uint8(face_array: np.ndarray) -> np.ndarray:
    # DeepFace returns faces as float [0,1]
    if face_array.dtype != np.uint8 and face_array.max() <= 1.0:
        return (face_array * 255).astype(np.uint8)
    return face_array.astype(np.uint8)


def _normalize(embedding) -> np.ndarray:
    vector = np.array(embedding, dtype=np.float32)
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector


class _FaceGroup:
    """FAISS index plus the reference tokens stored at each position."""

    def __init__(self, name: str, index: Optional[faiss.IndexFlatIP] = None, tokens: Optional[List[str]] = None):
        self.name = name
        self.index = index if index is not None else faiss.IndexFlatIP(EMBEDDING_DIM)
        self.tokens = tokens or []

    def add(self, token: str, embedding: np.ndarray):
        self.index.add(embedding.reshape(1, -1))
        self.tokens.append(token)

    def discard(self, token: str) -> bool:
        """Rebuild the index without token. Returns False when the group lacks it."""
        if token not in self.tokens:
            return False
        kept = [(t, self.index.reconstruct(i)) for i, t in enumerate(self.tokens) if t != token]
        self.index = faiss.IndexFlatIP(self.index.d)
        self.tokens = []
        for kept_token, embedding in kept:
            self.add(kept_token, embedding)
        return True

    def search(self, query: np.ndarray, top_k: int) -> List[SearchCandidate]:
        if self.index.ntotal == 0:
            return []
        scores, positions = self.index.search(query.reshape(1, -1), min(top_k, self.index.ntotal))

        candidates = []
        for score, position in zip(scores[0], positions[0]):
            if position < 0:
                continue
            # Inner product of normalized vectors is cosine similarity
            confidence = round(max(0.0, min(1.0, float(score))) * 100, 3)
            candidates.append(SearchCandidate(reference_token=self.tokens[position], confidence=confidence))
        return candidates


class LocalFaceProvider(RecognitionProvider):
    """
    In-process recognition provider.

    Confidence is cosine similarity scaled to 0-100; detection quality is
    the detector's confidence scaled to 0-100.

    Thread-safe: group and cache access is serialized with an RLock.
    """

    name = "local"

    def __init__(
        self,
        groups_dir: Path = GROUPS_DIR,
        model_name: str = FACE_RECOGNITION_MODEL,
        detector_backend: str = FACE_DETECTOR_BACKEND,
        default_group: str = DEFAULT_GROUP_TOKEN
    ):
        self.groups_dir = Path(groups_dir)
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.default_group = default_group
        self._lock = threading.RLock()
        self._groups: Dict[str, _FaceGroup] = {}
        self._embeddings: Dict[str, np.ndarray] = {}
        self._probes: "OrderedDict[str, np.ndarray]" = OrderedDict()

        self.groups_dir.mkdir(parents=True, exist_ok=True)
        self._load_groups()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _group_paths(self, name: str):
        return self.groups_dir / f"{name}.faiss", self.groups_dir / f"{name}.json"

    def _load_groups(self):
        with self._lock:
            for meta_path in sorted(self.groups_dir.glob("*.json")):
                name = meta_path.stem
                index_path, _ = self._group_paths(name)
                if not index_path.exists():
                    continue
                try:
                    index = faiss.read_index(str(index_path))
                    with open(meta_path, "r") as f:
                        tokens = json.load(f).get("tokens", [])
                except Exception as e:
                    logger.warning(f"Failed to load group '{name}': {e}. Skipping.")
                    continue

                group = _FaceGroup(name, index, tokens)
                self._groups[name] = group
                for position, token in enumerate(tokens):
                    self._embeddings[token] = index.reconstruct(position)
                logger.info(f"Loaded group '{name}' with {index.ntotal} faces")

    def _save_group(self, group: _FaceGroup):
        index_path, meta_path = self._group_paths(group.name)
        faiss.write_index(group.index, str(index_path))
        with open(meta_path, "w") as f:
            json.dump({"tokens": group.tokens}, f, indent=2)
        logger.debug(f"Group '{group.name}' saved to disk")

    # ------------------------------------------------------------------
    # Image handling
    # ------------------------------------------------------------------

    def preprocess_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode image bytes into an RGB numpy array, shrinking oversized images.

        Raises:
            DetectionFailed: If the image cannot be decoded
        """
        try:
            image = Image.open(BytesIO(image_bytes))
            if image.mode != "RGB":
                image = image.convert("RGB")
            if image.size[0] > MAX_IMAGE_SIZE[0] or image.size[1] > MAX_IMAGE_SIZE[1]:
                image.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
            return np.array(image)
        except Exception as e:
            raise DetectionFailed(f"Face detection failed: cannot decode image: {e}") from e

    def _embed(self, face_array: np.ndarray) -> np.ndarray:
        representations = DeepFace.represent(
            img_path=face_array,
            model_name=self.model_name,
            detector_backend="skip",
            enforce_detection=False
        )
        if not representations or representations[0].get("embedding") is None:
            raise DetectionFailed("Face detection failed: no embedding produced")
        return _normalize(representations[0]["embedding"])

    # ------------------------------------------------------------------
    # Provider operations
    # ------------------------------------------------------------------

    def detect(self, image_bytes: bytes) -> DetectionResult:
        img_array = self.preprocess_image(image_bytes)

        try:
            face_objs = DeepFace.extract_faces(
                img_path=img_array,
                detector_backend=self.detector_backend,
                enforce_detection=False,
                align=True
            )
        except Exception as e:
            raise DetectionFailed(f"Face detection failed: {e}") from e

        # With enforce_detection off, a miss comes back as one zero-confidence face
        face_objs = [f for f in face_objs or [] if f.get("confidence", 0) > 0]
        if not face_objs:
            raise NoFaceDetectedError(
                "No faces detected in the image. Please ensure your face is clearly visible."
            )

        faces = []
        for face_obj in face_objs:
            face_array = _to_uint8(face_obj["face"])
            try:
                embedding = self._embed(face_array)
            except DetectionFailed:
                raise
            except Exception as e:
                raise DetectionFailed(f"Face detection failed: embedding error: {e}") from e

            token = uuid.uuid4().hex
            self._remember_probe(token, embedding)

            area = face_obj.get("facial_area") or {}
            faces.append(DetectedFace(
                face_token=token,
                quality=round(max(0.0, min(1.0, float(face_obj["confidence"]))) * 100, 2),
                blur=blur_score(face_array),
                rectangle=FaceRectangle(
                    top=int(area.get("y", 0)),
                    left=int(area.get("x", 0)),
                    width=int(area.get("w", 0)),
                    height=int(area.get("h", 0))
                )
            ))

        return DetectionResult(faces=faces)

    def _remember_probe(self, token: str, embedding: np.ndarray):
        with self._lock:
            self._probes[token] = embedding
            while len(self._probes) > PROBE_CACHE_SIZE:
                self._probes.popitem(last=False)

    def _lookup(self, token: str) -> Optional[np.ndarray]:
        with self._lock:
            if token in self._embeddings:
                return self._embeddings[token]
            return self._probes.get(token)

    def enroll(self, reference_token: str, group_token: Optional[str] = None) -> str:
        name = group_token or self.default_group
        with self._lock:
            embedding = self._lookup(reference_token)
            if embedding is None:
                raise GroupOperationFailed(f"FaceSet operation failed: unknown face token '{reference_token}'")

            group = self._groups.get(name)
            created = group is None
            if created:
                group = _FaceGroup(name)

            if reference_token not in group.tokens:
                group.add(reference_token, embedding)
                try:
                    self._save_group(group)
                except Exception as e:
                    # Memory must not hold a face the disk copy lacks
                    group.discard(reference_token)
                    raise GroupOperationFailed(f"FaceSet operation failed: cannot persist group: {e}") from e
                self._embeddings[reference_token] = embedding
                self._probes.pop(reference_token, None)

            if created:
                self._groups[name] = group
                logger.info(f"Created group '{name}'")

            logger.info(f"Enrolled face into group '{name}' ({group.index.ntotal} faces)")
            return name

    def remove(self, reference_token: str, group_token: str) -> None:
        with self._lock:
            group = self._groups.get(group_token)
            if group is None:
                raise GroupOperationFailed(f"FaceSet operation failed: group '{group_token}' does not exist")

            previous = (group.index, group.tokens)
            if not group.discard(reference_token):
                return
            try:
                self._save_group(group)
            except Exception as e:
                group.index, group.tokens = previous
                raise GroupOperationFailed(f"FaceSet operation failed: cannot persist group: {e}") from e

            if not any(reference_token in g.tokens for g in self._groups.values()):
                self._embeddings.pop(reference_token, None)
            logger.info(f"Removed face from group '{group_token}' ({group.index.ntotal} faces)")

    def search_in_group(self, probe_token: str, group_token: str) -> List[SearchCandidate]:
        with self._lock:
            group = self._groups.get(group_token)
            if group is None:
                raise SearchUnavailable(f"Face search failed: group '{group_token}' does not exist")
            query = self._lookup(probe_token)
            if query is None:
                raise SearchUnavailable(f"Face search failed: unknown face token '{probe_token}'")
            candidates = group.search(query, TOP_K_MATCHES)

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    def compare(self, token_a: str, token_b: str) -> float:
        first = self._lookup(token_a)
        second = self._lookup(token_b)
        if first is None or second is None:
            raise CompareFailed("Face comparison failed: unknown face token")
        similarity = float(np.dot(first, second))
        return round(max(0.0, min(1.0, similarity)) * 100, 3)
