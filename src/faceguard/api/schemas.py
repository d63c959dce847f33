"""Pydantic request/response schemas for the FaceGuard API."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003

from pydantic import BaseModel, Field


class FaceRecordOut(BaseModel):
    """An enrolled identity. Descriptors are never exposed."""

    id: str
    display_name: str
    role: str
    authorized: bool
    enrolled_at: datetime
    origin: str = Field(description="'seed' for demo identities, 'self' for the enrolled user")
    descriptor_source: str = Field(description="Model that produced the descriptor, or 'fallback'")
    descriptor_dim: int
    has_image: bool


class GalleryResponse(BaseModel):
    faces: list[FaceRecordOut]


class DeviceOut(BaseModel):
    device_id: str
    label: str


class CameraOut(BaseModel):
    status: str = Field(description="'idle', 'requesting', 'active' or 'error'")
    device_id: str | None = None
    frame_width: int | None = None
    frame_height: int | None = None
    devices: list[DeviceOut] = Field(default_factory=list)
    error: str | None = None
    error_kind: str | None = Field(default=None, description="'permission', 'not_found', 'busy', 'frame', ...")


class MatchOut(BaseModel):
    matched: FaceRecordOut | None
    confidence: float = Field(ge=0.0, le=1.0)
    threshold_used: float
    authorized_only_filter_applied: bool
    best_candidate: FaceRecordOut | None = None
    rejection: str | None = None


class AuthenticationOutcomeOut(BaseModel):
    result: MatchOut | None
    face_detected: bool
    simulated: bool = Field(description="True when the fallback classifier produced the descriptor")
    guidance: str | None = None


class EnrollmentOut(BaseModel):
    record: FaceRecordOut | None = None
    face_detected: bool | None = None
    simulated: bool | None = None


class FlowOut(BaseModel):
    """Current state of the active flow, rendered declaratively by the client."""

    kind: str = Field(description="'enrollment' or 'authentication'")
    state: str
    name: str | None = None
    has_preview: bool
    camera: CameraOut
    camera_error: str | None = None
    camera_error_kind: str | None = None
    enrollment: EnrollmentOut | None = None
    authentication: AuthenticationOutcomeOut | None = None


class EnrollmentStartRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class RecognitionSettings(BaseModel):
    confidence_threshold: float = Field(ge=0.0, le=1.0)
    authorized_only: bool


class RecognitionSettingsUpdate(BaseModel):
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    authorized_only: bool | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    mode: str = Field(description="'loading', 'model' or 'fallback'; fallback results are simulated")
    model_state: str
    models_loaded: list[str]
    gallery_size: int
    seeded: bool = Field(description="True once the seeded identities are in the gallery")
    self_enrolled: bool
    camera_status: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection' or 'face_recognition'")
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
