"""Authentication: camera -> preview -> confirm -> matched / no match."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from faceguard.flows.base import CaptureFlow, FlowState
from faceguard.matching.matcher import RejectionReason

if TYPE_CHECKING:
    from faceguard.camera.frames import CaptureFrame
    from faceguard.camera.session import CameraSession
    from faceguard.gallery.gallery import FaceGallery
    from faceguard.matching.matcher import AuthenticationResult, Matcher, RecognitionConfig
    from faceguard.ml.embedder import FaceEmbedder

logger = logging.getLogger(__name__)

NO_FACE_GUIDANCE = "No face detected. Retake the photo facing the camera, with even lighting and your face centred."
BELOW_THRESHOLD_GUIDANCE = "No match found at confidence threshold {threshold:.2f}."
NOT_AUTHORIZED_GUIDANCE = "Face recognised but the identity is not authorized."
EMPTY_GALLERY_GUIDANCE = "No identities are enrolled."


@dataclass(frozen=True)
class AuthenticationOutcome:
    """Terminal report of an authentication attempt.

    ``face_detected=False`` (with ``result=None``) is a detection miss, distinct
    from a face that was found but not recognised.
    """

    result: AuthenticationResult | None
    face_detected: bool
    simulated: bool
    guidance: str | None = None

    @property
    def matched(self) -> bool:
        return self.result is not None and self.result.is_match


def _guidance(result: AuthenticationResult) -> str | None:
    if result.rejection is RejectionReason.BELOW_THRESHOLD:
        return BELOW_THRESHOLD_GUIDANCE.format(threshold=result.threshold_used)
    if result.rejection is RejectionReason.NOT_AUTHORIZED:
        return NOT_AUTHORIZED_GUIDANCE
    if result.rejection is RejectionReason.EMPTY_GALLERY:
        return EMPTY_GALLERY_GUIDANCE
    return None


class AuthenticationFlow(CaptureFlow):
    """Matches a confirmed still against the gallery. Never mutates the gallery."""

    kind: ClassVar[str] = "authentication"
    initial_state: ClassVar[FlowState] = FlowState.IDLE
    terminal_states: ClassVar[frozenset[FlowState]] = frozenset({FlowState.MATCHED, FlowState.NO_MATCH})

    def __init__(
        self,
        camera: CameraSession,
        embedder: FaceEmbedder,
        gallery: FaceGallery,
        matcher: Matcher,
        recognition: RecognitionConfig,
    ) -> None:
        super().__init__(camera, embedder)
        self._gallery = gallery
        self._matcher = matcher
        self._recognition = recognition
        self._outcome: AuthenticationOutcome | None = None

    @property
    def outcome(self) -> AuthenticationOutcome | None:
        return self._outcome

    async def _complete(self, frame: CaptureFrame) -> None:
        embedding = await self._embedder.embed(frame)
        if self._cancelled:
            return

        if embedding is None:
            self._outcome = AuthenticationOutcome(
                result=None, face_detected=False, simulated=False, guidance=NO_FACE_GUIDANCE
            )
            logger.info("Authentication: no face detected")
            self._finish(FlowState.NO_MATCH)
            return

        records = await self._gallery.snapshot()
        if self._cancelled:
            return

        result = self._matcher.match(
            embedding.descriptor,
            records,
            threshold=self._recognition.confidence_threshold,
            authorized_only=self._recognition.authorized_only,
        )
        self._outcome = AuthenticationOutcome(
            result=result,
            face_detected=True,
            simulated=embedding.simulated,
            guidance=_guidance(result),
        )
        logger.info(
            "Authentication %s: best=%s confidence=%.3f threshold=%.2f simulated=%s",
            "matched" if result.is_match else "rejected",
            result.best_candidate.display_name if result.best_candidate else None,
            result.confidence,
            result.threshold_used,
            embedding.simulated,
        )
        self._finish(FlowState.MATCHED if result.is_match else FlowState.NO_MATCH)
