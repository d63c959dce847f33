"""Face recognition (embedding) models.

Implementations: AuraFace v1 (default), ArcFace w600k_r50 (opt-in). Both take
aligned 112x112 crops and share the same preprocessing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from faceguard.ml.preprocessing import preprocess_for_recognition

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession


class FaceRecognizer(Protocol):
    """Protocol for face recognition (embedding) models."""

    @property
    def model_name(self) -> str: ...

    @property
    def embedding_dim(self) -> int: ...

    def get_embeddings(self, crops: list[NDArray[np.uint8]]) -> NDArray[np.float32]:
        """Return L2-normalized embeddings, shape (N, embedding_dim)."""
        ...


def l2_normalize(mat: NDArray[np.float32], eps: float = 1e-12) -> NDArray[np.float32]:
    """L2-normalize a vector or each row of a 2D array."""
    arr = np.asarray(mat, dtype=np.float32)
    if arr.ndim == 1:
        norm = float(np.linalg.norm(arr))
        return arr if norm < eps else arr / norm
    norms = np.maximum(np.linalg.norm(arr, axis=1, keepdims=True), eps)
    return arr / norms


class ArcFaceRecognizer:
    """ArcFace-style recognizer over a cached ONNX session."""

    def __init__(self, session: InferenceSession, model_name: str, embedding_dim: int) -> None:
        self._session = session
        self._model_name = model_name
        self._embedding_dim = embedding_dim
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def embedding_dim(self) -> int:
        return self._embedding_dim

    def get_embeddings(self, crops: list[NDArray[np.uint8]]) -> NDArray[np.float32]:
        if not crops:
            return np.zeros((0, self._embedding_dim), dtype=np.float32)
        batch = preprocess_for_recognition(crops)
        (output,) = self._session.run(None, {self._input_name: batch})[:1]
        embeddings = np.asarray(output, dtype=np.float32).reshape(len(crops), -1)
        if embeddings.shape[1] != self._embedding_dim:
            raise ValueError(
                f"{self._model_name} produced {embeddings.shape[1]}-d embeddings, expected {self._embedding_dim}"
            )
        return l2_normalize(embeddings)
