"""Tests for the self-enrollment flow."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import patch

import numpy as np
import pytest
from fakes import FakeCaptureDevice, FakeEmbeddingModel, make_frame

from faceguard.camera.frames import CaptureFrame, FrameSource
from faceguard.camera.session import CameraSession, CameraStatus
from faceguard.errors import (
    CameraNotActiveError,
    CameraPermissionError,
    DuplicateRecordError,
    FlowStateError,
    ImageDecodeError,
)
from faceguard.flows.base import FlowState
from faceguard.flows.enrollment import DEFAULT_ROLE, EnrollmentFlow
from faceguard.gallery.gallery import SELF_ENROLLMENT_KEY, FaceGallery
from faceguard.gallery.records import SELF_RECORD_ID, FaceRecord, RecordOrigin, StoredFaceRecord
from faceguard.gallery.storage import SqlStore
from faceguard.ml.embedder import FaceEmbedder
from faceguard.ml.fallback import FALLBACK_SOURCE, FallbackClassifier


@pytest.fixture()
def flow(camera: CameraSession, embedder: FaceEmbedder, gallery: FaceGallery) -> EnrollmentFlow:
    return EnrollmentFlow(camera, embedder, gallery)


class TestNamePrecondition:
    def test_starts_awaiting_name(self, flow: EnrollmentFlow) -> None:
        assert flow.state is FlowState.AWAITING_NAME
        assert flow.name is None

    async def test_camera_requires_name(self, flow: EnrollmentFlow, device: FakeCaptureDevice) -> None:
        with pytest.raises(FlowStateError, match="display name"):
            await flow.start_camera()
        assert device.requests == []

    def test_upload_requires_name(self, flow: EnrollmentFlow) -> None:
        with pytest.raises(FlowStateError):
            flow.use_image(make_frame(1))

    def test_blank_name_rejected(self, flow: EnrollmentFlow) -> None:
        with pytest.raises(ValueError):
            flow.set_name("   ")

    def test_name_is_trimmed(self, flow: EnrollmentFlow) -> None:
        flow.set_name("  Riley Park ")
        assert flow.name == "Riley Park"

    def test_name_of_seeded_identity_rejected(self, flow: EnrollmentFlow, gallery: FaceGallery) -> None:
        gallery.seed(
            [
                FaceRecord(
                    id="1",
                    display_name="Alex Johnson",
                    role="Marketing Director",
                    descriptor=FallbackClassifier(64).embed_name("Alex Johnson"),
                    authorized=True,
                    enrolled_at=datetime(2026, 1, 1, tzinfo=UTC),
                )
            ]
        )
        with pytest.raises(DuplicateRecordError):
            flow.set_name("alex johnson")


class TestCameraPath:
    async def test_capture_confirm_stores_self_record(
        self, flow: EnrollmentFlow, device: FakeCaptureDevice, gallery: FaceGallery
    ) -> None:
        flow.set_name("Riley Park")

        assert await flow.start_camera() is CameraStatus.ACTIVE
        assert flow.state is FlowState.CAMERA_ACTIVE
        frame = await flow.capture()
        assert flow.state is FlowState.PREVIEW_CAPTURED
        assert flow.preview is frame

        assert await flow.confirm() is FlowState.STORED

        record = gallery.self_record
        assert record is not None
        assert record is flow.record
        assert record.display_name == "Riley Park"
        assert record.role == DEFAULT_ROLE
        assert record.authorized is True
        assert record.origin is RecordOrigin.SELF
        assert record.descriptor.source == "fake_arcface"
        assert flow.face_detected is True
        assert flow.simulated is False
        assert gallery.images.load(record.source_image_ref or "") == frame.data
        assert device.live_streams == []

    async def test_retake_returns_to_live_camera(self, flow: EnrollmentFlow, device: FakeCaptureDevice) -> None:
        flow.set_name("Riley Park")
        await flow.start_camera()
        await flow.capture()

        assert await flow.retake() is CameraStatus.ACTIVE

        assert flow.state is FlowState.CAMERA_ACTIVE
        assert flow.preview is None
        assert len(device.streams) == 1

    async def test_capture_before_camera_is_rejected(self, flow: EnrollmentFlow) -> None:
        flow.set_name("Riley Park")
        with pytest.raises(FlowStateError):
            await flow.capture()

    async def test_confirm_without_preview_is_rejected(self, flow: EnrollmentFlow) -> None:
        flow.set_name("Riley Park")
        with pytest.raises(FlowStateError):
            await flow.confirm()

    async def test_camera_error_keeps_flow_recoverable(
        self, flow: EnrollmentFlow, device: FakeCaptureDevice
    ) -> None:
        flow.set_name("Riley Park")
        device.error = CameraPermissionError("Camera access denied")

        assert await flow.start_camera() is CameraStatus.ERROR
        assert flow.state is FlowState.AWAITING_NAME
        assert flow.camera_error is not None
        assert flow.camera_error.kind == "permission"

        device.error = None
        assert await flow.start_camera() is CameraStatus.ACTIVE
        assert flow.state is FlowState.CAMERA_ACTIVE
        assert flow.camera_error is None

    async def test_retry_camera_reuses_last_constraints(
        self, flow: EnrollmentFlow, device: FakeCaptureDevice, camera: CameraSession
    ) -> None:
        flow.set_name("Riley Park")
        device.error = CameraPermissionError("Camera access denied")
        assert await flow.start_camera() is CameraStatus.ERROR

        device.error = None
        with patch.object(camera, "retry", wraps=camera.retry) as retry:
            assert await flow.retry_camera() is CameraStatus.ACTIVE

        retry.assert_awaited_once()
        assert flow.state is FlowState.CAMERA_ACTIVE
        assert flow.camera_error is None
        assert device.requests[1] == device.requests[0]

    async def test_retry_camera_requires_name(self, flow: EnrollmentFlow, device: FakeCaptureDevice) -> None:
        with pytest.raises(FlowStateError):
            await flow.retry_camera()
        assert device.requests == []

    async def test_capture_after_camera_lost(self, flow: EnrollmentFlow, camera: CameraSession) -> None:
        flow.set_name("Riley Park")
        await flow.start_camera()
        camera.release()

        with pytest.raises(CameraNotActiveError):
            await flow.capture()
        assert flow.state is FlowState.AWAITING_NAME


class TestUploadPath:
    async def test_upload_releases_camera(self, flow: EnrollmentFlow, device: FakeCaptureDevice) -> None:
        flow.set_name("Riley Park")
        await flow.start_camera()

        flow.use_image(make_frame(1))

        assert flow.state is FlowState.PREVIEW_CAPTURED
        assert device.live_streams == []

    def test_undecodable_upload_rejected(self, flow: EnrollmentFlow) -> None:
        flow.set_name("Riley Park")
        with pytest.raises(ImageDecodeError):
            flow.use_image(CaptureFrame(data=b"nope", source=FrameSource.UPLOAD))
        assert flow.state is FlowState.AWAITING_NAME

    async def test_no_face_stores_fallback_descriptor(
        self, flow: EnrollmentFlow, model: FakeEmbeddingModel, gallery: FaceGallery
    ) -> None:
        frame = make_frame(1)
        model.no_face.add(frame.data)
        flow.set_name("Riley Park")
        flow.use_image(frame)

        assert await flow.confirm() is FlowState.STORED

        assert flow.face_detected is False
        assert flow.simulated is True
        assert gallery.self_record is not None
        assert gallery.self_record.descriptor.source == FALLBACK_SOURCE

    async def test_fallback_mode_enrollment(self, camera: CameraSession, gallery: FaceGallery) -> None:
        embedder = FaceEmbedder(FakeEmbeddingModel(fail_load=True), FallbackClassifier(64))
        flow = EnrollmentFlow(camera, embedder, gallery)
        flow.set_name("Riley Park")
        flow.use_image(make_frame(1))

        assert await flow.confirm() is FlowState.STORED

        assert flow.simulated is True
        assert flow.face_detected is True
        assert gallery.self_record is not None
        assert gallery.self_record.descriptor.dim == 64

    async def test_reenrollment_replaces_self_record(
        self, camera: CameraSession, embedder: FaceEmbedder, gallery: FaceGallery
    ) -> None:
        first = EnrollmentFlow(camera, embedder, gallery)
        first.set_name("Riley Park")
        first.use_image(make_frame(1))
        await first.confirm()

        second = EnrollmentFlow(camera, embedder, gallery)
        second.set_name("Riley Park")
        second.use_image(make_frame(2))
        await second.confirm()

        assert len(gallery) == 1
        assert second.record is not None
        assert gallery.self_record is second.record

    async def test_enrollment_is_persisted(self, flow: EnrollmentFlow, store: SqlStore) -> None:
        flow.set_name("Riley Park")
        flow.use_image(make_frame(1))
        await flow.confirm()

        payload = store.get(SELF_ENROLLMENT_KEY)
        assert payload is not None
        stored = StoredFaceRecord.model_validate_json(payload)
        assert stored.id == SELF_RECORD_ID
        assert stored.display_name == "Riley Park"
        assert stored.authorized is True
        assert flow.record is not None
        assert stored.source_image_ref == flow.record.source_image_ref
        np.testing.assert_allclose(stored.descriptor, flow.record.descriptor.vector)

    async def test_rejected_store_keeps_previous_enrollment(
        self, camera: CameraSession, embedder: FaceEmbedder, model: FakeEmbeddingModel, gallery: FaceGallery
    ) -> None:
        first = EnrollmentFlow(camera, embedder, gallery)
        first.set_name("Riley Park")
        first.use_image(make_frame(1))
        await first.confirm()
        assert first.record is not None
        kept_ref = first.record.source_image_ref

        second = EnrollmentFlow(camera, embedder, gallery)
        second.set_name("Drew Avery")
        second.use_image(make_frame(2))
        gallery.seed(
            [
                FaceRecord(
                    id="9",
                    display_name="Drew Avery",
                    role="Visitor",
                    descriptor=model.descriptor_for(b"drew"),
                    authorized=True,
                    enrolled_at=datetime(2026, 1, 1, tzinfo=UTC),
                )
            ]
        )

        with pytest.raises(DuplicateRecordError):
            await second.confirm()

        assert second.state is FlowState.PREVIEW_CAPTURED
        assert gallery.self_record is first.record
        assert kept_ref is not None
        assert gallery.images.load(kept_ref) == make_frame(1).data
        assert [path.name for path in gallery.images.directory.iterdir()] == [kept_ref]


class TestCancel:
    async def test_cancel_releases_camera(self, flow: EnrollmentFlow, camera: CameraSession) -> None:
        flow.set_name("Riley Park")
        await flow.start_camera()

        flow.cancel()

        assert flow.state is FlowState.CANCELLED
        assert camera.status is CameraStatus.IDLE
        assert camera.stream is None

    async def test_cancel_while_camera_opening(
        self, flow: EnrollmentFlow, device: FakeCaptureDevice, camera: CameraSession
    ) -> None:
        flow.set_name("Riley Park")
        device.gate = asyncio.Event()
        pending = asyncio.create_task(flow.start_camera())
        while not device.requests:
            await asyncio.sleep(0)

        flow.cancel()
        device.gate.set()
        await pending

        assert flow.state is FlowState.CANCELLED
        assert camera.status is CameraStatus.IDLE
        assert device.live_streams == []

    async def test_cancel_during_extraction_does_not_store(
        self,
        flow: EnrollmentFlow,
        embedder: FaceEmbedder,
        model: FakeEmbeddingModel,
        gallery: FaceGallery,
        store: SqlStore,
    ) -> None:
        await embedder.ready()
        model.gate = asyncio.Event()
        flow.set_name("Riley Park")
        flow.use_image(make_frame(1))

        pending = asyncio.create_task(flow.confirm())
        while model.embed_calls == 0:
            await asyncio.sleep(0)
        assert flow.state is FlowState.CONFIRMED

        flow.cancel()
        model.gate.set()

        assert await pending is FlowState.CANCELLED
        assert gallery.self_record is None
        assert store.get(SELF_ENROLLMENT_KEY) is None
        assert not gallery.images.directory.exists() or not any(gallery.images.directory.iterdir())

    async def test_cancel_after_stored_keeps_state(self, flow: EnrollmentFlow) -> None:
        flow.set_name("Riley Park")
        flow.use_image(make_frame(1))
        await flow.confirm()

        flow.cancel()

        assert flow.state is FlowState.STORED

    def test_listeners_notified(self, flow: EnrollmentFlow) -> None:
        seen: list[FlowState] = []
        unsubscribe = flow.subscribe(seen.append)

        flow.set_name("Riley Park")
        flow.use_image(make_frame(1))
        unsubscribe()
        flow.cancel()

        assert seen == [FlowState.PREVIEW_CAPTURED]
