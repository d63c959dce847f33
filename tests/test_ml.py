"""Tests for preprocessing, the ONNX detector/recognizer wrappers and the embedding model."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from fakes import encode_png, make_frame, make_image

from faceguard.camera.frames import CaptureFrame, FrameSource
from faceguard.config import Settings
from faceguard.errors import EmbeddingError, ImageDecodeError
from faceguard.ml.embedder import EmbedderMode, FaceEmbedder
from faceguard.ml.embedding import ModelState, OnnxEmbeddingModel
from faceguard.ml.face_detector import RawDetection, RetinaFaceDetector, build_priors, nms
from faceguard.ml.face_recognizer import ArcFaceRecognizer, l2_normalize
from faceguard.ml.fallback import FallbackClassifier
from faceguard.ml.inference import InferencePool
from faceguard.ml.preprocessing import (
    ARCFACE_TEMPLATE,
    align_face,
    decode_image,
    letterbox_for_detection,
    preprocess_for_recognition,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

NUM_PRIORS = 16800


def _session(outputs: list[np.ndarray]) -> MagicMock:
    model_input = MagicMock()
    model_input.name = "input"
    session = MagicMock()
    session.get_inputs.return_value = [model_input]
    session.run.return_value = outputs
    return session


def _detector_outputs(hits: dict[int, float]) -> list[np.ndarray]:
    loc = np.zeros((1, NUM_PRIORS, 4), dtype=np.float32)
    conf = np.zeros((1, NUM_PRIORS, 2), dtype=np.float32)
    conf[0, :, 0] = 1.0
    for index, score in hits.items():
        conf[0, index] = [1.0 - score, score]
    landms = np.zeros((1, NUM_PRIORS, 10), dtype=np.float32)
    return [loc, conf, landms]


# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------


class TestPreprocessing:
    def test_decode_image(self) -> None:
        image = decode_image(encode_png(make_image(1, (40, 30))), max_file_size=10_000_000, max_image_pixels=10_000)
        assert image.shape == (30, 40, 3)

    def test_decode_rejects_garbage(self) -> None:
        with pytest.raises(ImageDecodeError, match="decode"):
            decode_image(b"garbage", max_file_size=1000, max_image_pixels=1000)

    def test_decode_rejects_large_file(self) -> None:
        data = encode_png(make_image(1))
        with pytest.raises(ImageDecodeError, match="bytes"):
            decode_image(data, max_file_size=len(data) - 1, max_image_pixels=1_000_000)

    def test_decode_rejects_too_many_pixels(self) -> None:
        data = encode_png(make_image(1, (40, 30)))
        with pytest.raises(ImageDecodeError, match="pixels"):
            decode_image(data, max_file_size=10_000_000, max_image_pixels=40 * 30 - 1)

    def test_letterbox(self) -> None:
        letterbox = letterbox_for_detection(make_image(1, (320, 240)))
        assert letterbox.tensor.shape == (1, 3, 640, 640)
        assert letterbox.scale == pytest.approx(2.0)

    def test_align_face_on_template(self) -> None:
        crop = align_face(make_image(1, (112, 112)), ARCFACE_TEMPLATE)
        assert crop is not None
        assert crop.shape == (112, 112, 3)

    def test_align_face_degenerate_landmarks(self) -> None:
        assert align_face(make_image(1, (112, 112)), np.full((5, 2), 50.0, dtype=np.float32)) is None

    def test_preprocess_for_recognition(self) -> None:
        batch = preprocess_for_recognition([make_image(1, (112, 112)), make_image(2, (112, 112))])
        assert batch.shape == (2, 3, 112, 112)
        assert batch.min() >= -1.0
        assert batch.max() <= 1.0


# ---------------------------------------------------------------------------
# Detector and recognizer
# ---------------------------------------------------------------------------


class TestRetinaFaceDetector:
    def test_prior_count(self) -> None:
        assert build_priors().shape == (NUM_PRIORS, 4)

    def test_nms_suppresses_overlaps(self) -> None:
        boxes = np.array([[0, 0, 10, 10], [1, 1, 11, 11], [50, 50, 60, 60]], dtype=np.float32)
        scores = np.array([0.9, 0.8, 0.7], dtype=np.float32)
        assert nms(boxes, scores, 0.4) == [0, 2]

    def test_detect_maps_back_to_image_pixels(self) -> None:
        detector = RetinaFaceDetector(_session(_detector_outputs({0: 0.95})), "retinaface_resnet34")

        detections = detector.detect(make_image(1, (320, 240)))

        assert len(detections) == 1
        assert detections[0].score == pytest.approx(0.95)
        np.testing.assert_allclose(detections[0].bbox, [-2.0, -2.0, 6.0, 6.0], atol=1e-4)
        np.testing.assert_allclose(detections[0].landmarks, np.full(10, 2.0), atol=1e-4)

    def test_detect_below_min_score(self) -> None:
        detector = RetinaFaceDetector(_session(_detector_outputs({0: 0.5})), "retinaface_resnet34", min_score=0.8)
        assert detector.detect(make_image(1, (320, 240))) == []


class TestArcFaceRecognizer:
    def test_embeddings_are_normalized(self) -> None:
        raw = np.full((1, 512), 3.0, dtype=np.float32)
        recognizer = ArcFaceRecognizer(_session([raw]), "auraface_v1", 512)

        embeddings = recognizer.get_embeddings([make_image(1, (112, 112))])

        assert embeddings.shape == (1, 512)
        assert float(np.linalg.norm(embeddings[0])) == pytest.approx(1.0, abs=1e-5)

    def test_wrong_dimension(self) -> None:
        recognizer = ArcFaceRecognizer(_session([np.ones((1, 128), dtype=np.float32)]), "auraface_v1", 512)
        with pytest.raises(ValueError, match="128-d"):
            recognizer.get_embeddings([make_image(1, (112, 112))])

    def test_l2_normalize_leaves_zero_vector(self) -> None:
        zero = np.zeros(4, dtype=np.float32)
        np.testing.assert_array_equal(l2_normalize(zero), zero)


# ---------------------------------------------------------------------------
# OnnxEmbeddingModel
# ---------------------------------------------------------------------------


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(1)
    yield inference_pool
    inference_pool.shutdown()


def _model(tmp_path: Path, manager: MagicMock, pool: InferencePool) -> OnnxEmbeddingModel:
    return OnnxEmbeddingModel(Settings(models_dir=tmp_path), manager, pool)


class TestOnnxEmbeddingModel:
    async def test_load_failure_is_reported_not_raised(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.side_effect = OSError("download failed")
        model = _model(tmp_path, manager, pool)

        assert await model.load() is ModelState.FAILED
        assert model.state is ModelState.FAILED
        with pytest.raises(EmbeddingError):
            await model.embed(make_frame(1))

    async def test_embed_before_load(self, tmp_path: Path, pool: InferencePool) -> None:
        model = _model(tmp_path, MagicMock(), pool)
        with pytest.raises(EmbeddingError, match="not_loaded"):
            await model.embed(make_frame(1))

    async def test_load_is_idempotent(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)

        assert await model.load() is ModelState.READY
        assert await model.load() is ModelState.READY
        assert manager.get_session.call_count == 2
        assert model.model_name == "auraface_v1"

    async def test_embed_largest_face(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        await model.load()

        small = RawDetection(bbox=np.array([0, 0, 10, 10], np.float32), score=0.99, landmarks=ARCFACE_TEMPLATE / 4)
        large = RawDetection(bbox=np.array([0, 0, 112, 112], np.float32), score=0.9, landmarks=ARCFACE_TEMPLATE)
        detector = MagicMock()
        detector.detect.return_value = [small, large]
        recognizer = MagicMock()
        recognizer.get_embeddings.return_value = l2_normalize(np.ones((1, 512), dtype=np.float32))
        model._detector = detector
        model._recognizer = recognizer

        descriptor = await model.embed(make_frame(1))

        assert descriptor is not None
        assert descriptor.source == "auraface_v1"
        assert descriptor.dim == 512
        (crops,) = recognizer.get_embeddings.call_args.args
        assert len(crops) == 1
        assert crops[0].shape == (112, 112, 3)

    async def test_embed_without_face(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        await model.load()
        model._detector = MagicMock(detect=MagicMock(return_value=[]))

        assert await model.embed(make_frame(1)) is None

    async def test_runtime_failure_becomes_embedding_error(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        await model.load()
        model._detector = MagicMock(detect=MagicMock(side_effect=RuntimeError("onnx crashed")))

        with pytest.raises(EmbeddingError, match="onnx crashed"):
            await model.embed(make_frame(1))

    async def test_undecodable_frame(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        await model.load()

        with pytest.raises(ImageDecodeError):
            await model.embed(CaptureFrame(data=b"garbage", source=FrameSource.UPLOAD))

    async def test_unalignable_face_is_skipped(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        await model.load()

        degenerate = RawDetection(
            bbox=np.array([0, 0, 112, 112], np.float32), score=0.9, landmarks=np.full((5, 2), 50.0, np.float32)
        )
        usable = RawDetection(bbox=np.array([0, 0, 56, 56], np.float32), score=0.9, landmarks=ARCFACE_TEMPLATE)
        recognizer = MagicMock()
        recognizer.get_embeddings.return_value = l2_normalize(np.ones((1, 512), dtype=np.float32))
        model._detector = MagicMock(detect=MagicMock(return_value=[degenerate, usable]))
        model._recognizer = recognizer

        assert await model.embed(make_frame(1)) is not None
        recognizer.get_embeddings.assert_called_once()

    async def test_unalignable_face_keeps_model_mode(self, tmp_path: Path, pool: InferencePool) -> None:
        manager = MagicMock()
        manager.get_session.return_value = _session([])
        model = _model(tmp_path, manager, pool)
        embedder = FaceEmbedder(model, FallbackClassifier(64))
        assert await embedder.ready() is EmbedderMode.MODEL

        degenerate = RawDetection(
            bbox=np.array([0, 0, 112, 112], np.float32), score=0.9, landmarks=np.full((5, 2), 50.0, np.float32)
        )
        detector = MagicMock(detect=MagicMock(return_value=[degenerate]))
        model._detector = detector
        model._recognizer = MagicMock()

        assert await embedder.embed(make_frame(1)) is None
        detector.detect.return_value = []
        assert await embedder.embed(make_frame(2)) is None
        assert embedder.mode is EmbedderMode.MODEL
