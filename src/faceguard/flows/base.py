"""Capture -> preview -> confirm plumbing shared by both flows.

Each flow walks a subset of ``FlowState``::

    <initial> -> CAMERA_ACTIVE -> PREVIEW_CAPTURED -> CONFIRMED -> <terminal>

``retake`` goes back from PREVIEW_CAPTURED to CAMERA_ACTIVE, ``use_image``
jumps to PREVIEW_CAPTURED with an uploaded still, and ``cancel`` leaves any
non-terminal state for CANCELLED. The flow never embeds before ``confirm``,
and ``cancel`` releases the camera synchronously whatever the state.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING, ClassVar

from faceguard.camera.session import CameraStatus
from faceguard.errors import CameraError, CameraNotActiveError, FlowStateError

if TYPE_CHECKING:
    from collections.abc import Callable

    from faceguard.camera.frames import CaptureFrame
    from faceguard.camera.session import CameraSession
    from faceguard.ml.embedder import FaceEmbedder

logger = logging.getLogger(__name__)


class FlowState(StrEnum):
    AWAITING_NAME = "awaiting_name"
    IDLE = "idle"
    CAMERA_ACTIVE = "camera_active"
    PREVIEW_CAPTURED = "preview_captured"
    CONFIRMED = "confirmed"
    STORED = "stored"
    MATCHED = "matched"
    NO_MATCH = "no_match"
    CANCELLED = "cancelled"


class CaptureFlow:
    kind: ClassVar[str]
    initial_state: ClassVar[FlowState]
    terminal_states: ClassVar[frozenset[FlowState]]

    def __init__(self, camera: CameraSession, embedder: FaceEmbedder) -> None:
        self._camera = camera
        self._embedder = embedder
        self._state = self.initial_state
        self._preview: CaptureFrame | None = None
        self._camera_error: CameraError | None = None
        self._listeners: list[Callable[[FlowState], None]] = []

    # -- Introspection ------------------------------------------------------

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def preview(self) -> CaptureFrame | None:
        return self._preview

    @property
    def camera(self) -> CameraSession:
        return self._camera

    @property
    def camera_error(self) -> CameraError | None:
        return self._camera_error

    @property
    def is_finished(self) -> bool:
        return self._state in self.terminal_states or self._state is FlowState.CANCELLED

    def subscribe(self, listener: Callable[[FlowState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Events -------------------------------------------------------------

    async def start_camera(self) -> CameraStatus:
        self._require({self.initial_state}, "start the camera")
        self._check_can_start()
        self._camera_error = None

        return self._adopt_camera(await self._camera.acquire())

    async def retry_camera(self) -> CameraStatus:
        """User-triggered retry after a camera failure, with the last constraints."""
        self._require({self.initial_state}, "retry the camera")
        self._check_can_start()
        self._camera_error = None
        return self._adopt_camera(await self._camera.retry())

    async def capture(self) -> CaptureFrame:
        """Grab a still from the live stream into the preview."""
        self._require({FlowState.CAMERA_ACTIVE}, "capture")
        try:
            frame = await self._camera.capture()
        except CameraNotActiveError as exc:
            self._camera_error = exc
            self._preview = None
            self._set_state(self.initial_state)
            raise
        except CameraError as exc:
            self._camera_error = exc
            raise
        if self._state is not FlowState.CAMERA_ACTIVE:
            raise FlowStateError(f"{self.kind} flow left the camera state during capture")
        self._preview = frame
        self._set_state(FlowState.PREVIEW_CAPTURED)
        return frame

    def use_image(self, frame: CaptureFrame) -> None:
        """Use an uploaded or sample still instead of the live camera."""
        self._require(
            {self.initial_state, FlowState.CAMERA_ACTIVE, FlowState.PREVIEW_CAPTURED},
            "use an image",
        )
        if self._state is self.initial_state:
            self._check_can_start()
        frame.decode()
        self._camera.release()
        self._camera_error = None
        self._preview = frame
        self._set_state(FlowState.PREVIEW_CAPTURED)

    async def retake(self) -> CameraStatus:
        """Discard the preview and go back to the live camera."""
        self._require({FlowState.PREVIEW_CAPTURED}, "retake")
        self._preview = None
        if self._camera.status is CameraStatus.ACTIVE:
            self._set_state(FlowState.CAMERA_ACTIVE)
            return CameraStatus.ACTIVE
        self._set_state(self.initial_state)
        return await self.start_camera()

    async def confirm(self) -> FlowState:
        """Accept the preview and run extraction to a terminal state."""
        self._require({FlowState.PREVIEW_CAPTURED}, "confirm")
        frame = self._preview
        if frame is None:
            raise FlowStateError("No preview to confirm")
        self._set_state(FlowState.CONFIRMED)
        try:
            await self._complete(frame)
        except BaseException:
            if self._state is FlowState.CONFIRMED:
                self._set_state(FlowState.PREVIEW_CAPTURED)
            raise
        return self._state

    def cancel(self) -> None:
        """Tear down: always releases the camera, whatever the state."""
        self._camera.release()
        if not self.is_finished:
            logger.info("%s flow cancelled from %s", self.kind.capitalize(), self._state)
            self._preview = None
            self._set_state(FlowState.CANCELLED)

    # -- Hooks --------------------------------------------------------------

    def _check_can_start(self) -> None:
        """Raise FlowStateError if preconditions for capturing are unmet."""

    async def _complete(self, frame: CaptureFrame) -> None:
        raise NotImplementedError

    # -- Internal -----------------------------------------------------------

    @property
    def _cancelled(self) -> bool:
        return self._state is FlowState.CANCELLED

    def _require(self, allowed: set[FlowState], action: str) -> None:
        if self._state not in allowed:
            raise FlowStateError(f"Cannot {action} while {self.kind} is {self._state}")

    def _set_state(self, state: FlowState) -> None:
        if state is self._state:
            return
        logger.debug("%s: %s -> %s", self.kind, self._state, state)
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def _adopt_camera(self, status: CameraStatus) -> CameraStatus:
        if self._state is not self.initial_state:
            # Cancelled (or otherwise moved on) while the camera was opening.
            self._camera.release()
            return self._camera.status
        if status is CameraStatus.ACTIVE:
            self._set_state(FlowState.CAMERA_ACTIVE)
        elif status is CameraStatus.ERROR:
            self._camera_error = self._camera.error
        return status

    def _finish(self, state: FlowState) -> None:
        self._camera.release()
        self._set_state(state)
