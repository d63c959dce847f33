"""Camera session: acquisition, readiness waiting, explicit retry, teardown.

State machine::

    IDLE -> REQUESTING -> ACTIVE -> IDLE       (release)
            REQUESTING -> ERROR  -> IDLE       (release / retry)

The session is the single owner of the underlying stream. Views read
``stream`` or subscribe to snapshots; nothing pushes the stream around.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from faceguard.camera.devices import CameraConstraints
from faceguard.camera.frames import CaptureFrame, frame_from_pixels
from faceguard.errors import CameraError, CameraFrameError, CameraNotActiveError, CameraNotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable

    from faceguard.camera.devices import CaptureDevice, CaptureStream, DeviceDescriptor

logger = logging.getLogger(__name__)

METADATA_POLL_SECONDS: float = 0.05


class CameraStatus(StrEnum):
    IDLE = "idle"
    REQUESTING = "requesting"
    ACTIVE = "active"
    ERROR = "error"


@dataclass(frozen=True)
class CameraSnapshot:
    """Immutable view of the session, emitted to subscribers."""

    status: CameraStatus
    device_id: str | None = None
    frame_size: tuple[int, int] | None = None
    devices: tuple[DeviceDescriptor, ...] = ()
    error: str | None = None
    error_kind: str | None = None


class CameraSession:
    """Owns at most one live capture stream."""

    def __init__(
        self,
        device: CaptureDevice,
        *,
        default_constraints: CameraConstraints | None = None,
        metadata_timeout: float = 5.0,
    ) -> None:
        self._device = device
        self._default_constraints = default_constraints or CameraConstraints()
        self._metadata_timeout = metadata_timeout

        self._status = CameraStatus.IDLE
        self._stream: CaptureStream | None = None
        self._devices: tuple[DeviceDescriptor, ...] = ()
        self._frame_size: tuple[int, int] | None = None
        self._error: CameraError | None = None
        self._last_constraints: CameraConstraints | None = None
        # Bumped by every acquire/release; an acquire that resumes under a
        # different generation has been superseded.
        self._generation = 0
        self._listeners: list[Callable[[CameraSnapshot], None]] = []

    # -- Public API ---------------------------------------------------------

    @property
    def status(self) -> CameraStatus:
        return self._status

    @property
    def stream(self) -> CaptureStream | None:
        return self._stream

    @property
    def error(self) -> CameraError | None:
        return self._error

    def snapshot(self) -> CameraSnapshot:
        return CameraSnapshot(
            status=self._status,
            device_id=self._stream.device_id if self._stream is not None else None,
            frame_size=self._frame_size,
            devices=self._devices,
            error=str(self._error) if self._error is not None else None,
            error_kind=self._error.kind if self._error is not None else None,
        )

    def subscribe(self, listener: Callable[[CameraSnapshot], None]) -> Callable[[], None]:
        """Register a snapshot listener; returns an unsubscribe callable."""
        self._listeners.append(listener)
        listener(self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def acquire(self, constraints: CameraConstraints | None = None) -> CameraStatus:
        """Open a stream, releasing any previous one first.

        Returns ``ACTIVE`` on success or ``ERROR`` on a device failure. Never
        raises for device errors; they are exposed through ``error``.
        """
        self.release()
        constraints = constraints or self._default_constraints
        self._last_constraints = constraints
        self._generation += 1
        generation = self._generation
        self._set_status(CameraStatus.REQUESTING)

        try:
            devices = await self._device.enumerate_devices()
            if generation != self._generation:
                return self._status
            self._devices = tuple(devices)
            if not devices:
                raise CameraNotFoundError("No camera devices found")
            # Awaiting here covers permission-prompt latency.
            stream = await self._device.request_stream(constraints)
        except CameraError as exc:
            if generation != self._generation:
                return self._status
            logger.warning("Camera acquisition failed (%s): %s", exc.kind, exc)
            self._error = exc
            self._set_status(CameraStatus.ERROR)
            return self._status

        if generation != self._generation:
            # Released or superseded while the request was pending.
            logger.info("Discarding stream from superseded camera request")
            stream.stop()
            return self._status

        self._stream = stream
        self._set_status(CameraStatus.ACTIVE)

        await self._wait_for_metadata(stream, generation)
        if generation == self._generation and any(not device.label for device in self._devices):
            await self._reenumerate(generation)
        return self._status

    async def retry(self) -> CameraStatus:
        """Explicit user-triggered retry using the last constraints."""
        if self._status in (CameraStatus.REQUESTING, CameraStatus.ACTIVE):
            return self._status
        logger.info("Retrying camera acquisition")
        return await self.acquire(self._last_constraints)

    def release(self) -> None:
        """Stop every track and return to IDLE. Safe to call on any path."""
        self._generation += 1
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            logger.info("Released camera %s", stream.device_id)
        self._frame_size = None
        self._error = None
        if self._status is not CameraStatus.IDLE:
            self._set_status(CameraStatus.IDLE)

    async def capture(self) -> CaptureFrame:
        """Grab one still from the active stream.

        Raises:
            CameraNotActiveError: No stream is active.
            CameraFrameError: The device returned no frame.
        """
        stream = self._stream
        if self._status is not CameraStatus.ACTIVE or stream is None:
            raise CameraNotActiveError("Camera is not active")
        pixels = await stream.read_frame()
        if pixels is None:
            raise CameraFrameError("Camera returned no frame")
        return frame_from_pixels(pixels)

    # -- Internal -----------------------------------------------------------

    def _set_status(self, status: CameraStatus) -> None:
        self._status = status
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            listener(snapshot)

    async def _wait_for_metadata(self, stream: CaptureStream, generation: int) -> None:
        deadline = time.monotonic() + self._metadata_timeout
        while generation == self._generation:
            size = stream.frame_size
            if size is not None:
                self._frame_size = size
                self._set_status(self._status)
                return
            if time.monotonic() >= deadline:
                logger.warning(
                    "Camera metadata not available after %.1fs; continuing without frame size",
                    self._metadata_timeout,
                )
                return
            await asyncio.sleep(METADATA_POLL_SECONDS)

    async def _reenumerate(self, generation: int) -> None:
        try:
            devices = await self._device.enumerate_devices()
        except CameraError as exc:
            logger.debug("Re-enumeration after grant failed: %s", exc)
            return
        if generation == self._generation:
            self._devices = tuple(devices)
            self._set_status(self._status)
