"""Embedding capability: readiness plus ``embed(frame) -> Descriptor | None``.

Detection and embedding are one operation here. ``None`` means no usable
face was found, which is a normal outcome; capability problems raise
``EmbeddingError`` so the caller can switch to the fallback classifier.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from faceguard.errors import EmbeddingError, ImageDecodeError
from faceguard.ml.face_detector import RetinaFaceDetector
from faceguard.ml.face_recognizer import ArcFaceRecognizer
from faceguard.ml.model_manager import ModelTask, get_spec
from faceguard.ml.preprocessing import align_face, decode_image

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceguard.camera.frames import CaptureFrame
    from faceguard.config import Settings
    from faceguard.ml.face_detector import FaceDetector
    from faceguard.ml.face_recognizer import FaceRecognizer
    from faceguard.ml.inference import InferencePool
    from faceguard.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Descriptor:
    """A fixed-length face embedding tagged with the model that produced it.

    Descriptors are only comparable when ``source`` and dimension match.
    """

    vector: NDArray[np.float32]
    source: str

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    def comparable_with(self, other: Descriptor) -> bool:
        return self.source == other.source and self.dim == other.dim

    def to_list(self) -> list[float]:
        return [float(v) for v in self.vector]

    @classmethod
    def from_list(cls, values: list[float], source: str) -> Descriptor:
        vector = np.asarray(values, dtype=np.float32).reshape(-1)
        if vector.size == 0:
            raise ValueError("Descriptor must not be empty")
        return cls(vector=vector, source=source)


class ModelState(StrEnum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class EmbeddingModel(Protocol):
    """Protocol for the injected face embedding capability."""

    @property
    def model_name(self) -> str: ...

    @property
    def state(self) -> ModelState: ...

    async def load(self) -> ModelState:
        """Load the model. Idempotent; returns READY or FAILED, never raises."""
        ...

    async def embed(self, frame: CaptureFrame) -> Descriptor | None:
        """Embed the most prominent face, or return None if there is none.

        Raises:
            EmbeddingError: The model is not loaded or failed at runtime.
        """
        ...


class OnnxEmbeddingModel:
    """RetinaFace detection + ArcFace recognition on ONNX Runtime."""

    def __init__(self, settings: Settings, manager: ModelManager, pool: InferencePool) -> None:
        self._settings = settings
        self._manager = manager
        self._pool = pool
        self._detection_spec = get_spec(settings.face_detection_model, ModelTask.FACE_DETECTION)
        self._recognition_spec = get_spec(settings.face_recognition_model, ModelTask.FACE_RECOGNITION)

        self._state = ModelState.NOT_LOADED
        self._load_task: asyncio.Task[ModelState] | None = None
        self._detector: FaceDetector | None = None
        self._recognizer: FaceRecognizer | None = None

    @property
    def model_name(self) -> str:
        return self._recognition_spec.name

    @property
    def state(self) -> ModelState:
        return self._state

    async def load(self) -> ModelState:
        if self._state in (ModelState.READY, ModelState.FAILED):
            return self._state
        if self._load_task is None:
            self._state = ModelState.LOADING
            self._load_task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._load_task)

    async def embed(self, frame: CaptureFrame) -> Descriptor | None:
        if self._state is not ModelState.READY:
            raise EmbeddingError(f"Embedding model is {self._state}")
        try:
            vector = await self._pool.run(self._embed_sync, frame.data)
        except ImageDecodeError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding failed: {exc}") from exc
        if vector is None:
            return None
        return Descriptor(vector=vector, source=self.model_name)

    # -- Internal -----------------------------------------------------------

    async def _load(self) -> ModelState:
        logger.info(
            "Loading embedding model (detection=%s, recognition=%s)",
            self._detection_spec.name,
            self._recognition_spec.name,
        )
        try:
            detector_session = await self._pool.run(self._manager.get_session, self._detection_spec.name)
            recognizer_session = await self._pool.run(self._manager.get_session, self._recognition_spec.name)
            self._detector = RetinaFaceDetector(
                detector_session, self._detection_spec.name, min_score=self._settings.min_detection_score
            )
            self._recognizer = ArcFaceRecognizer(
                recognizer_session, self._recognition_spec.name, self._recognition_spec.embedding_dim
            )
        except Exception:
            logger.exception("Embedding model failed to load")
            self._state = ModelState.FAILED
            return self._state

        self._state = ModelState.READY
        logger.info("Embedding model ready (%s, dim=%d)", self.model_name, self._recognition_spec.embedding_dim)
        return self._state

    def _embed_sync(self, data: bytes) -> NDArray[np.float32] | None:
        detector, recognizer = self._detector, self._recognizer
        if detector is None or recognizer is None:
            raise EmbeddingError("Embedding model is not loaded")

        image = decode_image(
            data,
            max_file_size=self._settings.max_file_size,
            max_image_pixels=self._settings.max_image_pixels,
        )
        # Largest face first; a face whose landmarks cannot be aligned is skipped.
        for face in sorted(detector.detect(image), key=lambda det: det.area, reverse=True):
            crop = align_face(image, face.landmarks)
            if crop is None:
                logger.debug("Skipping face at %s: landmarks could not be aligned", face.bbox.tolist())
                continue
            return recognizer.get_embeddings([crop])[0]
        return None
