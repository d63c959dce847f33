"""Deterministic pseudo-embeddings for when the real model is unavailable.

This is a degraded mode. The vector is a mean-centred grayscale thumbnail of
the whole frame: the same frame always yields the same vector and visually
similar frames land close together, but nothing here models facial geometry.
Matching accuracy is best-effort only, and callers must flag results as
simulated.

The identity name is only used when there are no image bytes at all, so that
authenticating with the frame used for enrollment reproduces the enrolled
vector exactly.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING

import cv2
import numpy as np

from faceguard.errors import ImageDecodeError
from faceguard.ml.embedding import Descriptor
from faceguard.ml.face_recognizer import l2_normalize

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceguard.camera.frames import CaptureFrame

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "fallback"


class FallbackClassifier:
    """Same ``embed`` contract as the real model, minus the face detection."""

    def __init__(self, dim: int = 128) -> None:
        if dim < 8 or dim % 8:
            raise ValueError(f"Fallback dimension must be a positive multiple of 8, got {dim}")
        self._dim = dim
        # (width, height) of a thumbnail with exactly ``dim`` cells.
        self._grid = (dim // 8, 8)

    @property
    def dim(self) -> int:
        return self._dim

    async def embed(self, frame: CaptureFrame, identity_hint: str | None = None) -> Descriptor:
        if not frame.data:
            return self.embed_name(identity_hint or "")
        try:
            vector = self._image_component(frame.decode())
        except ImageDecodeError:
            logger.debug("Fallback embedding from raw bytes (frame not decodable)")
            vector = self._seeded(hashlib.blake2b(frame.data).digest())
        return Descriptor(vector=vector, source=FALLBACK_SOURCE)

    def embed_name(self, name: str) -> Descriptor:
        """Name-only descriptor, used for seeded identities without a sample image."""
        digest = hashlib.blake2b(name.strip().casefold().encode("utf-8")).digest()
        return Descriptor(vector=self._seeded(digest), source=FALLBACK_SOURCE)

    def _image_component(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        thumb = cv2.resize(gray, self._grid, interpolation=cv2.INTER_AREA).astype(np.float32).reshape(-1)
        thumb -= float(thumb.mean())
        if float(np.linalg.norm(thumb)) < 1e-6:
            # Flat image: nothing to centre on, key on its brightness instead.
            return self._seeded(hashlib.blake2b(f"flat:{int(gray.mean())}".encode()).digest())
        return l2_normalize(thumb)

    def _seeded(self, digest: bytes) -> NDArray[np.float32]:
        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
        return l2_normalize(rng.standard_normal(self._dim).astype(np.float32))
