"""Image preprocessing: decoding with size limits, detector letterboxing,
and five-point alignment for the recognizer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceguard.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

DETECTION_SIZE: int = 640
# BGR channel means the RetinaFace weights were trained with.
DETECTION_MEAN = np.array([104.0, 117.0, 123.0], dtype=np.float32)

RECOGNITION_SIZE: int = 112
# ArcFace reference landmarks for a 112x112 crop:
# left eye, right eye, nose tip, left mouth corner, right mouth corner.
ARCFACE_TEMPLATE = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)


@dataclass(frozen=True)
class Letterbox:
    """A padded detector input and the scale that maps it back to the image."""

    tensor: NDArray[np.float32]
    scale: float


def decode_image(image_bytes: bytes, *, max_file_size: int, max_image_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an HxWx3 BGR uint8 array.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image data")
    if len(image_bytes) > max_file_size:
        raise ImageDecodeError(f"Image is {len(image_bytes)} bytes, limit is {max_file_size}")

    image = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise ImageDecodeError("Could not decode image data")

    height, width = image.shape[:2]
    if height * width > max_image_pixels:
        raise ImageDecodeError(f"Image is {width}x{height}, limit is {max_image_pixels} pixels")
    return image


def letterbox_for_detection(image: NDArray[np.uint8], size: int = DETECTION_SIZE) -> Letterbox:
    """Resize the long side to ``size``, pad to a square, mean-subtract, NCHW."""
    height, width = image.shape[:2]
    scale = size / float(max(height, width))
    resized = cv2.resize(image, (round(width * scale), round(height * scale)), interpolation=cv2.INTER_LINEAR)

    canvas = np.zeros((size, size, 3), dtype=np.float32)
    canvas[: resized.shape[0], : resized.shape[1]] = resized
    canvas -= DETECTION_MEAN
    tensor = np.ascontiguousarray(canvas.transpose(2, 0, 1)[np.newaxis])
    return Letterbox(tensor=tensor, scale=scale)


def align_face(image: NDArray[np.uint8], landmarks: NDArray[np.float32]) -> NDArray[np.uint8] | None:
    """Warp a face onto the ArcFace template using its five landmarks.

    Returns None when the landmarks are degenerate and no transform fits.
    """
    points = np.asarray(landmarks, dtype=np.float32).reshape(5, 2)
    matrix, _ = cv2.estimateAffinePartial2D(points, ARCFACE_TEMPLATE, method=cv2.LMEDS)
    if matrix is None:
        return None
    return cv2.warpAffine(image, matrix, (RECOGNITION_SIZE, RECOGNITION_SIZE), borderValue=0.0)


def preprocess_for_recognition(crops: list[NDArray[np.uint8]]) -> NDArray[np.float32]:
    """Stack aligned BGR crops into an (N, 3, 112, 112) RGB tensor in [-1, 1]."""
    batch = np.stack([cv2.cvtColor(crop, cv2.COLOR_BGR2RGB) for crop in crops]).astype(np.float32)
    batch = (batch - 127.5) / 127.5
    return np.ascontiguousarray(batch.transpose(0, 3, 1, 2))
