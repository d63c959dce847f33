"""Capture device boundary and its OpenCV implementation.

The session layer only talks to the ``CaptureDevice`` / ``CaptureStream``
protocols, so tests can substitute doubles that count ``stop()`` calls.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import cv2

from faceguard.errors import CameraBusyError, CameraNotFoundError, CameraPermissionError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

_PERMISSION_MARKERS = ("permission", "not authorized", "access denied")


@dataclass(frozen=True)
class DeviceDescriptor:
    """A video input device. ``label`` may be empty before the first grant."""

    device_id: str
    label: str = ""


@dataclass(frozen=True)
class CameraConstraints:
    """Requested capture parameters; ``device_id=None`` picks the first device."""

    device_id: str | None = None
    width: int = 640
    height: int = 480
    facing_mode: str = "user"


class MediaTrack(Protocol):
    @property
    def active(self) -> bool: ...

    def stop(self) -> None: ...


class CaptureStream(Protocol):
    """A live capture stream holding one or more hardware tracks."""

    @property
    def device_id(self) -> str: ...

    @property
    def tracks(self) -> list[MediaTrack]: ...

    @property
    def frame_size(self) -> tuple[int, int] | None:
        """Return (width, height) once stream metadata is available."""
        ...

    async def read_frame(self) -> NDArray[np.uint8] | None:
        """Read one BGR frame, or None if the device produced nothing."""
        ...

    def stop(self) -> None:
        """Stop every track of the stream."""
        ...


class CaptureDevice(Protocol):
    """Protocol for enumerating and opening video inputs."""

    async def enumerate_devices(self) -> list[DeviceDescriptor]: ...

    async def request_stream(self, constraints: CameraConstraints) -> CaptureStream:
        """Open a stream.

        Raises:
            CameraPermissionError: Access to the camera was denied.
            CameraNotFoundError: No matching device exists.
            CameraBusyError: The device exists but could not be opened.
        """
        ...


# ---------------------------------------------------------------------------
# OpenCV implementation
# ---------------------------------------------------------------------------


class OpenCVTrack:
    """Wraps a ``cv2.VideoCapture``; stopping releases the hardware handle."""

    def __init__(self, capture: cv2.VideoCapture) -> None:
        self._capture = capture
        self._lock = threading.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def read(self) -> NDArray[np.uint8] | None:
        with self._lock:
            if not self._active:
                return None
            ok, frame = self._capture.read()
        return frame if ok else None

    def size(self) -> tuple[int, int] | None:
        with self._lock:
            if not self._active:
                return None
            width = int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
        if width <= 0 or height <= 0:
            return None
        return width, height

    def stop(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            self._capture.release()


class OpenCVStream:
    def __init__(self, device_id: str, track: OpenCVTrack) -> None:
        self._device_id = device_id
        self._track = track

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def tracks(self) -> list[MediaTrack]:
        return [self._track]

    @property
    def frame_size(self) -> tuple[int, int] | None:
        return self._track.size()

    async def read_frame(self) -> NDArray[np.uint8] | None:
        return await asyncio.to_thread(self._track.read)

    def stop(self) -> None:
        self._track.stop()


class OpenCVCaptureDevice:
    """Capture device backed by OpenCV camera indices ``0..max_index``."""

    def __init__(self, default_index: int = 0, max_index: int = 4) -> None:
        self._default_index = default_index
        self._max_index = max_index

    async def enumerate_devices(self) -> list[DeviceDescriptor]:
        return await asyncio.to_thread(self._scan_indices)

    async def request_stream(self, constraints: CameraConstraints) -> CaptureStream:
        index = self._default_index if constraints.device_id is None else int(constraints.device_id)
        track = await asyncio.to_thread(self._open, index, constraints)
        logger.info("Opened camera %s (%sx%s requested)", index, constraints.width, constraints.height)
        return OpenCVStream(str(index), track)

    def _scan_indices(self) -> list[DeviceDescriptor]:
        found: list[DeviceDescriptor] = []
        for index in range(self._max_index + 1):
            capture = cv2.VideoCapture(index)
            try:
                if capture.isOpened():
                    found.append(DeviceDescriptor(device_id=str(index), label=f"{capture.getBackendName()} #{index}"))
            finally:
                capture.release()
        logger.debug("Found %d camera(s)", len(found))
        return found

    def _open(self, index: int, constraints: CameraConstraints) -> OpenCVTrack:
        try:
            capture = cv2.VideoCapture(index)
        except cv2.error as exc:
            message = str(exc).lower()
            if any(marker in message for marker in _PERMISSION_MARKERS):
                raise CameraPermissionError(f"Camera access denied: {exc}") from exc
            raise CameraBusyError(f"Camera {index} could not be opened: {exc}") from exc

        if not capture.isOpened():
            capture.release()
            if index > self._max_index:
                raise CameraNotFoundError(f"Camera {index} does not exist")
            raise CameraBusyError(f"Camera {index} is busy or unreadable")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        return OpenCVTrack(capture)
