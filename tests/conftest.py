"""Shared fixtures: fake camera, fake model and a gallery under tmp_path."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fakes import FakeCaptureDevice, FakeEmbeddingModel

from faceguard.camera.session import CameraSession
from faceguard.gallery.gallery import FaceGallery
from faceguard.gallery.storage import ImageStore, SqlStore
from faceguard.matching.matcher import Matcher, RecognitionConfig
from faceguard.ml.embedder import FaceEmbedder
from faceguard.ml.fallback import FallbackClassifier

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture()
def device() -> FakeCaptureDevice:
    return FakeCaptureDevice()


@pytest.fixture()
def camera(device: FakeCaptureDevice) -> CameraSession:
    return CameraSession(device, metadata_timeout=0.2)


@pytest.fixture()
def model() -> FakeEmbeddingModel:
    return FakeEmbeddingModel()


@pytest.fixture()
def embedder(model: FakeEmbeddingModel) -> FaceEmbedder:
    return FaceEmbedder(model, FallbackClassifier(64))


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SqlStore]:
    sql_store = SqlStore.sqlite(tmp_path / "faceguard.db")
    yield sql_store
    sql_store.close()


@pytest.fixture()
def images(tmp_path: Path) -> ImageStore:
    return ImageStore(tmp_path / "images")


@pytest.fixture()
def gallery(store: SqlStore, images: ImageStore) -> FaceGallery:
    return FaceGallery(store, images)


@pytest.fixture()
def matcher() -> Matcher:
    return Matcher()


@pytest.fixture()
def recognition() -> RecognitionConfig:
    return RecognitionConfig()
