"""Still images handed from capture sources to the flows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceguard.errors import CameraFrameError, ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

JPEG_QUALITY: int = 92


class FrameSource(StrEnum):
    CAMERA = "camera"
    UPLOAD = "upload"
    SAMPLE = "sample"


@dataclass(frozen=True)
class CaptureFrame:
    """An encoded still image.

    Frames are ephemeral: they are owned by the flow that captured them and
    only persisted when an enrollment is confirmed.
    """

    data: bytes
    source: FrameSource
    captured_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    width: int | None = None
    height: int | None = None

    def decode(self) -> NDArray[np.uint8]:
        """Decode into an HxWx3 BGR uint8 array.

        Raises:
            ImageDecodeError: If the bytes are not a supported image.
        """
        if not self.data:
            raise ImageDecodeError("Empty image data")
        buf = np.frombuffer(self.data, dtype=np.uint8)
        image = cv2.imdecode(buf, cv2.IMREAD_COLOR)
        if image is None:
            raise ImageDecodeError("Could not decode image data")
        return image


def frame_from_pixels(pixels: NDArray[np.uint8], source: FrameSource = FrameSource.CAMERA) -> CaptureFrame:
    """JPEG-encode a BGR frame read from a capture device."""
    ok, encoded = cv2.imencode(".jpg", pixels, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY])
    if not ok:
        raise CameraFrameError("Could not encode captured frame")
    height, width = pixels.shape[:2]
    return CaptureFrame(data=encoded.tobytes(), source=source, width=int(width), height=int(height))
