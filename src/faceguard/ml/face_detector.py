"""RetinaFace face detector on ONNX Runtime.

Outputs of the exported graph are ``loc`` (1, P, 4), ``conf`` (1, P, 2) and
``landms`` (1, P, 10) against a fixed set of SSD-style priors.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import TYPE_CHECKING, Protocol

import numpy as np

from faceguard.ml.preprocessing import DETECTION_SIZE, letterbox_for_detection

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

MIN_SIZES: tuple[tuple[int, int], ...] = ((16, 32), (64, 128), (256, 512))
STEPS: tuple[int, ...] = (8, 16, 32)
VARIANCES: tuple[float, float] = (0.1, 0.2)
NMS_IOU: float = 0.4


@dataclass(frozen=True)
class RawDetection:
    """A detected face in original image pixel coordinates."""

    bbox: NDArray[np.float32]
    score: float
    landmarks: NDArray[np.float32]

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = (float(v) for v in self.bbox)
        return max(0.0, x2 - x1) * max(0.0, y2 - y1)


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str: ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an HxWx3 BGR uint8 image, highest score first."""
        ...


def build_priors(size: int = DETECTION_SIZE) -> NDArray[np.float32]:
    """Generate (cx, cy, w, h) priors normalised to the square input."""
    anchors: list[list[float]] = []
    for step, min_sizes in zip(STEPS, MIN_SIZES, strict=True):
        cells = int(np.ceil(size / step))
        for row, col in product(range(cells), range(cells)):
            for min_size in min_sizes:
                anchors.append(
                    [(col + 0.5) * step / size, (row + 0.5) * step / size, min_size / size, min_size / size]
                )
    return np.asarray(anchors, dtype=np.float32)


def decode_boxes(loc: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    centers = priors[:, :2] + loc[:, :2] * VARIANCES[0] * priors[:, 2:]
    sizes = priors[:, 2:] * np.exp(loc[:, 2:] * VARIANCES[1])
    return np.concatenate([centers - sizes / 2, centers + sizes / 2], axis=1)


def decode_landmarks(pre: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    points = pre.reshape(-1, 5, 2)
    decoded = priors[:, np.newaxis, :2] + points * VARIANCES[0] * priors[:, np.newaxis, 2:]
    return decoded.reshape(-1, 10)


def nms(boxes: NDArray[np.float32], scores: NDArray[np.float32], iou_threshold: float) -> list[int]:
    """Greedy non-maximum suppression; returns kept indices by descending score."""
    x1, y1, x2, y2 = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
    areas = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    order = np.argsort(-scores)
    keep: list[int] = []
    while order.size > 0:
        best = int(order[0])
        keep.append(best)
        rest = order[1:]
        w = np.maximum(0.0, np.minimum(x2[best], x2[rest]) - np.maximum(x1[best], x1[rest]))
        h = np.maximum(0.0, np.minimum(y2[best], y2[rest]) - np.maximum(y1[best], y1[rest]))
        inter = w * h
        iou = inter / np.maximum(areas[best] + areas[rest] - inter, 1e-12)
        order = rest[iou <= iou_threshold]
    return keep


class RetinaFaceDetector:
    """RetinaFace detector over a cached ONNX session."""

    def __init__(self, session: InferenceSession, model_name: str, min_score: float = 0.8) -> None:
        self._session = session
        self._model_name = model_name
        self._min_score = min_score
        self._input_name = session.get_inputs()[0].name
        self._priors = build_priors()

    @property
    def model_name(self) -> str:
        return self._model_name

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        letterbox = letterbox_for_detection(image)
        loc, conf, landms = self._session.run(None, {self._input_name: letterbox.tensor})

        scores = np.asarray(conf, dtype=np.float32)[0][:, 1]
        mask = scores >= self._min_score
        if not np.any(mask):
            return []

        priors = self._priors[mask]
        boxes = decode_boxes(np.asarray(loc, dtype=np.float32)[0][mask], priors)
        points = decode_landmarks(np.asarray(landms, dtype=np.float32)[0][mask], priors)
        scores = scores[mask]

        # Back to original pixels: normalised -> letterbox pixels -> image pixels.
        factor = DETECTION_SIZE / letterbox.scale
        boxes *= factor
        points *= factor

        return [
            RawDetection(bbox=boxes[i], score=float(scores[i]), landmarks=points[i])
            for i in nms(boxes, scores, NMS_IOU)
        ]
