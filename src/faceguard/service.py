"""Process-wide composition of the face ID core.

``FaceIdService`` owns the single camera session, the gallery, the embedder
and the currently active flow. Beginning a new flow cancels the previous one,
so the camera is only ever held by the most recent flow.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from faceguard.camera.devices import CameraConstraints, OpenCVCaptureDevice
from faceguard.camera.session import CameraSession
from faceguard.flows.authentication import AuthenticationFlow
from faceguard.flows.enrollment import EnrollmentFlow
from faceguard.gallery.gallery import FaceGallery
from faceguard.gallery.seed import build_seed_records
from faceguard.gallery.storage import ImageStore, SqlStore
from faceguard.matching.matcher import Matcher, RecognitionConfig
from faceguard.ml.embedder import FaceEmbedder
from faceguard.ml.embedding import OnnxEmbeddingModel
from faceguard.ml.fallback import FallbackClassifier
from faceguard.ml.inference import InferencePool
from faceguard.ml.model_manager import OnnxModelManager

if TYPE_CHECKING:
    from faceguard.camera.devices import CaptureDevice
    from faceguard.config import Settings
    from faceguard.flows.base import CaptureFlow
    from faceguard.ml.embedding import EmbeddingModel
    from faceguard.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

STORE_FILENAME = "faceguard.db"
IMAGES_DIRNAME = "images"


class FaceIdService:
    def __init__(
        self,
        settings: Settings,
        *,
        model: EmbeddingModel,
        device: CaptureDevice,
        gallery: FaceGallery,
        pool: InferencePool | None = None,
        manager: ModelManager | None = None,
    ) -> None:
        self._settings = settings
        self._pool = pool
        self._manager = manager
        self.recognition = RecognitionConfig(
            confidence_threshold=settings.confidence_threshold,
            authorized_only=settings.authorized_only,
        )
        self.embedder = FaceEmbedder(model, FallbackClassifier(settings.fallback_dim))
        self.gallery = gallery
        self.matcher = Matcher()
        self.camera = CameraSession(
            device,
            default_constraints=CameraConstraints(width=settings.camera_width, height=settings.camera_height),
            metadata_timeout=settings.camera_metadata_timeout,
        )
        self._flow: CaptureFlow | None = None
        self._seed_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> FaceIdService:
        """Wire the production ONNX model, OpenCV camera and SQL store."""
        pool = InferencePool(settings.max_concurrent)
        manager = OnnxModelManager(settings)
        data_dir = settings.data_dir
        if settings.database_url:
            store = SqlStore(settings.database_url)
        else:
            store = SqlStore.sqlite(data_dir / STORE_FILENAME)
        return cls(
            settings,
            model=OnnxEmbeddingModel(settings, manager, pool),
            device=OpenCVCaptureDevice(settings.camera_index, settings.camera_scan_max_index),
            gallery=FaceGallery(store, ImageStore(data_dir / IMAGES_DIRNAME)),
            pool=pool,
            manager=manager,
        )

    @property
    def pool(self) -> InferencePool | None:
        return self._pool

    @property
    def manager(self) -> ModelManager | None:
        return self._manager

    @property
    def current_flow(self) -> CaptureFlow | None:
        return self._flow

    @property
    def seeded(self) -> bool:
        return self._seed_task is not None and self._seed_task.done()

    async def start(self) -> None:
        """Restore persisted enrollment and start the model load in the background.

        Returns without waiting for the model. The seeded identities are
        embedded once the load settles; until then the gallery holds only the
        restored self record and the embedder reports ``loading``.
        """
        self.gallery.load_persisted()
        self.embedder.start()
        if self._seed_task is None:
            self._seed_task = asyncio.create_task(self._install_seeds())
        logger.info("Face ID core started (mode=%s, gallery=%d)", self.embedder.mode, len(self.gallery))

    async def wait_seeded(self) -> None:
        """Wait until the seeded identities are in the gallery."""
        if self._seed_task is not None:
            await asyncio.shield(self._seed_task)

    def shutdown(self) -> None:
        if self._seed_task is not None:
            self._seed_task.cancel()
        self.end_flow()
        self.camera.release()
        self.gallery.close()
        if self._manager is not None:
            self._manager.close()
        if self._pool is not None:
            self._pool.shutdown()

    def begin_enrollment(self) -> EnrollmentFlow:
        flow = EnrollmentFlow(self.camera, self.embedder, self.gallery)
        self._install(flow)
        return flow

    def begin_authentication(self) -> AuthenticationFlow:
        flow = AuthenticationFlow(self.camera, self.embedder, self.gallery, self.matcher, self.recognition)
        self._install(flow)
        return flow

    def end_flow(self) -> None:
        if self._flow is not None:
            self._flow.cancel()
            self._flow = None

    async def clear_self_enrollment(self) -> bool:
        if isinstance(self._flow, EnrollmentFlow) and not self._flow.is_finished:
            self.end_flow()
        return await self.gallery.clear_self()

    async def _install_seeds(self) -> None:
        mode = await self.embedder.ready()
        try:
            seeds = await build_seed_records(self.embedder, self._settings.samples_dir)
        except OSError:
            logger.exception("Could not read seed samples from %s", self._settings.samples_dir)
            return
        self.gallery.seed(seeds)
        logger.info("Seeded gallery (mode=%s, gallery=%d)", mode, len(self.gallery))

    def _install(self, flow: CaptureFlow) -> None:
        self.end_flow()
        self._flow = flow
        logger.info("Started %s flow", flow.kind)
