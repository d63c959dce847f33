"""Routes embedding requests to the real model or the fallback classifier.

Flows only see ``FaceEmbedder``; whether the model or the fallback answered
is reported through ``Embedding.simulated`` and ``mode``. Once the model
fails (at load or during ``embed``) the embedder stays in fallback mode for
the rest of the process instead of retrying.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from faceguard.errors import EmbeddingError
from faceguard.ml.embedding import ModelState

if TYPE_CHECKING:
    from faceguard.camera.frames import CaptureFrame
    from faceguard.ml.embedding import Descriptor, EmbeddingModel
    from faceguard.ml.fallback import FallbackClassifier

logger = logging.getLogger(__name__)


class EmbedderMode(StrEnum):
    LOADING = "loading"
    MODEL = "model"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Embedding:
    descriptor: Descriptor
    simulated: bool


class FaceEmbedder:
    def __init__(self, model: EmbeddingModel, fallback: FallbackClassifier) -> None:
        self._model = model
        self._fallback = fallback
        self._fallback_active = False
        self._load_task: asyncio.Task[ModelState] | None = None

    @property
    def model(self) -> EmbeddingModel:
        return self._model

    @property
    def fallback(self) -> FallbackClassifier:
        return self._fallback

    @property
    def mode(self) -> EmbedderMode:
        if self._fallback_active:
            return EmbedderMode.FALLBACK
        if self._model.state is ModelState.READY:
            return EmbedderMode.MODEL
        return EmbedderMode.LOADING

    def start(self) -> asyncio.Task[ModelState]:
        """Begin loading the model in the background."""
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._model.load())
        return self._load_task

    async def ready(self) -> EmbedderMode:
        """Wait for the model to settle. No timeout: loading may take a while."""
        if self._fallback_active:
            return EmbedderMode.FALLBACK
        state = await asyncio.shield(self.start())
        if state is not ModelState.READY:
            self._switch_to_fallback(f"model load reported {state}")
        return self.mode

    async def embed(self, frame: CaptureFrame, identity_hint: str | None = None) -> Embedding | None:
        """Embed a confirmed frame.

        Returns None when the model ran and found no face. In fallback mode a
        descriptor is always produced.
        """
        if await self.ready() is EmbedderMode.MODEL:
            try:
                descriptor = await self._model.embed(frame)
            except EmbeddingError as exc:
                self._switch_to_fallback(str(exc))
            else:
                if descriptor is None:
                    return None
                return Embedding(descriptor=descriptor, simulated=False)
        return await self.embed_fallback(frame, identity_hint)

    async def embed_fallback(self, frame: CaptureFrame, identity_hint: str | None = None) -> Embedding:
        descriptor = await self._fallback.embed(frame, identity_hint)
        return Embedding(descriptor=descriptor, simulated=True)

    def _switch_to_fallback(self, reason: str) -> None:
        if not self._fallback_active:
            logger.warning("Switching to fallback embeddings for this session: %s", reason)
            self._fallback_active = True
