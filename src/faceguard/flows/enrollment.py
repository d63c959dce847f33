"""Self-enrollment: name -> camera -> preview -> confirm -> stored."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, ClassVar

from faceguard.errors import DuplicateRecordError, FlowStateError
from faceguard.flows.base import CaptureFlow, FlowState
from faceguard.gallery.records import SELF_RECORD_ID, FaceRecord, RecordOrigin

if TYPE_CHECKING:
    from faceguard.camera.frames import CaptureFrame
    from faceguard.camera.session import CameraSession
    from faceguard.gallery.gallery import FaceGallery
    from faceguard.ml.embedder import FaceEmbedder

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "Enrolled User"


class EnrollmentFlow(CaptureFlow):
    """Enrolls the user's own face as the single self record.

    Enrollment always completes with some descriptor: when the model finds no
    face (or is unavailable) the fallback classifier is used, and the result
    is flagged via ``face_detected`` / ``simulated``. A fallback descriptor
    only reliably matches frames close to the enrolled one.
    """

    kind: ClassVar[str] = "enrollment"
    initial_state: ClassVar[FlowState] = FlowState.AWAITING_NAME
    terminal_states: ClassVar[frozenset[FlowState]] = frozenset({FlowState.STORED})

    def __init__(
        self,
        camera: CameraSession,
        embedder: FaceEmbedder,
        gallery: FaceGallery,
        *,
        role: str = DEFAULT_ROLE,
    ) -> None:
        super().__init__(camera, embedder)
        self._gallery = gallery
        self._role = role
        self._name: str | None = None
        self._record: FaceRecord | None = None
        self._face_detected: bool | None = None
        self._simulated: bool | None = None

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def record(self) -> FaceRecord | None:
        return self._record

    @property
    def face_detected(self) -> bool | None:
        return self._face_detected

    @property
    def simulated(self) -> bool | None:
        return self._simulated

    def set_name(self, name: str) -> None:
        self._require({FlowState.AWAITING_NAME}, "set the name")
        cleaned = name.strip()
        if not cleaned:
            raise ValueError("Display name must not be empty")
        if self._gallery.name_taken(cleaned, ignore_id=SELF_RECORD_ID):
            raise DuplicateRecordError(f"{cleaned!r} is already enrolled")
        self._name = cleaned

    def _check_can_start(self) -> None:
        if not self._name:
            raise FlowStateError("A display name is required before the camera can start")

    async def _complete(self, frame: CaptureFrame) -> None:
        name = self._name
        if name is None:
            raise FlowStateError("A display name is required to enroll")

        embedding = await self._embedder.embed(frame, identity_hint=name)
        face_detected = embedding is not None
        if embedding is None:
            logger.warning("No face detected while enrolling %s; storing a fallback descriptor", name)
            embedding = await self._embedder.embed_fallback(frame, name)
        if self._cancelled:
            return

        image_ref = self._gallery.images.save(SELF_RECORD_ID, frame.data)
        record = FaceRecord(
            id=SELF_RECORD_ID,
            display_name=name,
            role=self._role,
            descriptor=embedding.descriptor,
            authorized=True,
            enrolled_at=datetime.now(UTC),
            source_image_ref=image_ref,
            origin=RecordOrigin.SELF,
        )
        try:
            await self._gallery.upsert_self(record)
        except BaseException:
            self._gallery.images.delete(image_ref)
            raise

        self._record = record
        self._face_detected = face_detected
        self._simulated = embedding.simulated
        logger.info(
            "Enrolled %s (descriptor=%s, dim=%d, simulated=%s)",
            name,
            record.descriptor.source,
            record.descriptor.dim,
            embedding.simulated,
        )
        self._finish(FlowState.STORED)
