"""API route definitions.

The API is a thin view layer: every endpoint forwards one user event to the
active flow (or the camera session) and returns the resulting state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from faceguard.api.auth import require_operator
from faceguard.api.schemas import (
    AuthenticationOutcomeOut,
    CameraOut,
    DeviceOut,
    EnrollmentOut,
    EnrollmentStartRequest,
    ErrorResponse,
    FaceRecordOut,
    FlowOut,
    GalleryResponse,
    HealthResponse,
    MatchOut,
    ModelInfo,
    ModelsResponse,
    RecognitionSettings,
    RecognitionSettingsUpdate,
)
from faceguard.camera.frames import CaptureFrame, FrameSource
from faceguard.errors import (
    CameraError,
    DuplicateRecordError,
    FlowStateError,
    ImageDecodeError,
    RecordNotFoundError,
)
from faceguard.flows.authentication import AuthenticationFlow
from faceguard.flows.enrollment import EnrollmentFlow
from faceguard.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from faceguard.camera.session import CameraSnapshot
    from faceguard.config import Settings
    from faceguard.flows.base import CaptureFlow
    from faceguard.gallery.records import FaceRecord
    from faceguard.matching.matcher import AuthenticationResult
    from faceguard.service import FaceIdService

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_operator)])

_FLOW_ERRORS = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_service(request: Request) -> FaceIdService:
    service: FaceIdService = request.app.state.service
    return service


def _current_flow(service: FaceIdService) -> CaptureFlow:
    flow = service.current_flow
    if flow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active flow")
    return flow


async def _read_upload(file: UploadFile, settings: Settings) -> CaptureFrame:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )
    return CaptureFrame(data=data, source=FrameSource.UPLOAD)


# ---------------------------------------------------------------------------
# Domain -> schema conversion
# ---------------------------------------------------------------------------


def _record_out(record: FaceRecord | None) -> FaceRecordOut | None:
    if record is None:
        return None
    return FaceRecordOut(
        id=record.id,
        display_name=record.display_name,
        role=record.role,
        authorized=record.authorized,
        enrolled_at=record.enrolled_at,
        origin=str(record.origin),
        descriptor_source=record.descriptor.source,
        descriptor_dim=record.descriptor.dim,
        has_image=record.source_image_ref is not None,
    )


def _camera_out(snapshot: CameraSnapshot) -> CameraOut:
    width, height = snapshot.frame_size if snapshot.frame_size is not None else (None, None)
    return CameraOut(
        status=str(snapshot.status),
        device_id=snapshot.device_id,
        frame_width=width,
        frame_height=height,
        devices=[DeviceOut(device_id=d.device_id, label=d.label) for d in snapshot.devices],
        error=snapshot.error,
        error_kind=snapshot.error_kind,
    )


def _match_out(result: AuthenticationResult) -> MatchOut:
    return MatchOut(
        matched=_record_out(result.matched),
        confidence=result.confidence,
        threshold_used=result.threshold_used,
        authorized_only_filter_applied=result.authorized_only_filter_applied,
        best_candidate=_record_out(result.best_candidate),
        rejection=str(result.rejection) if result.rejection is not None else None,
    )


def _flow_out(flow: CaptureFlow) -> FlowOut:
    out = FlowOut(
        kind=flow.kind,
        state=str(flow.state),
        has_preview=flow.preview is not None,
        camera=_camera_out(flow.camera.snapshot()),
        camera_error=str(flow.camera_error) if flow.camera_error is not None else None,
        camera_error_kind=flow.camera_error.kind if flow.camera_error is not None else None,
    )
    if isinstance(flow, EnrollmentFlow):
        out.name = flow.name
        out.enrollment = EnrollmentOut(
            record=_record_out(flow.record),
            face_detected=flow.face_detected,
            simulated=flow.simulated,
        )
    elif isinstance(flow, AuthenticationFlow) and flow.outcome is not None:
        outcome = flow.outcome
        out.authentication = AuthenticationOutcomeOut(
            result=_match_out(outcome.result) if outcome.result is not None else None,
            face_detected=outcome.face_detected,
            simulated=outcome.simulated,
            guidance=outcome.guidance,
        )
    return out


# ---------------------------------------------------------------------------
# Service status
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health, including whether results are simulated."""
    settings = _get_settings(request)
    service = _get_service(request)
    pool = service.pool
    manager = service.manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        mode=str(service.embedder.mode),
        model_state=str(service.embedder.model.state),
        models_loaded=manager.loaded_models() if manager is not None else [],
        gallery_size=len(service.gallery),
        seeded=service.seeded,
        self_enrolled=service.gallery.self_record is not None,
        camera_status=str(service.camera.status),
        concurrent_requests=pool.active_count if pool is not None else 0,
        queue_depth=pool.queue_depth if pool is not None else 0,
    )


@router.get("/models", response_model=ModelsResponse, summary="List available models")
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    active_models = {settings.face_detection_model, settings.face_recognition_model}

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in active_models:
            model_status = "active"
        elif spec.insightface and not settings.accept_insightface_license:
            model_status = "requires_license"
        else:
            model_status = "available"
        models.append(ModelInfo(name=spec.name, task=str(spec.task), status=model_status, license=spec.license))

    return ModelsResponse(models=models)


# ---------------------------------------------------------------------------
# Gallery and recognition settings
# ---------------------------------------------------------------------------


@router.get("/faces", response_model=GalleryResponse, summary="List enrolled identities")
async def list_faces(request: Request) -> GalleryResponse:
    service = _get_service(request)
    records = await service.gallery.snapshot()
    return GalleryResponse(faces=[out for out in map(_record_out, records) if out is not None])


@router.delete(
    "/faces/self",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Clear the self-enrollment",
)
async def clear_self_enrollment(request: Request) -> None:
    service = _get_service(request)
    if not await service.clear_self_enrollment():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No self-enrollment to clear")


@router.get(
    "/faces/self/image",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/jpeg": {}, "image/png": {}}},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
    summary="The still stored with the self-enrollment",
)
async def self_enrollment_image(request: Request) -> Response:
    gallery = _get_service(request).gallery
    record = gallery.self_record
    data = gallery.images.load(record.source_image_ref) if record and record.source_image_ref else None
    if data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No enrollment image stored")
    media_type = "image/png" if data.startswith(b"\x89PNG") else "image/jpeg"
    return Response(content=data, media_type=media_type)


@router.get("/settings/recognition", response_model=RecognitionSettings, summary="Current match policy")
async def get_recognition(request: Request) -> RecognitionSettings:
    recognition = _get_service(request).recognition
    return RecognitionSettings(
        confidence_threshold=recognition.confidence_threshold,
        authorized_only=recognition.authorized_only,
    )


@router.put("/settings/recognition", response_model=RecognitionSettings, summary="Tune the match policy")
async def update_recognition(body: RecognitionSettingsUpdate, request: Request) -> RecognitionSettings:
    recognition = _get_service(request).recognition
    recognition.update(confidence_threshold=body.confidence_threshold, authorized_only=body.authorized_only)
    return RecognitionSettings(
        confidence_threshold=recognition.confidence_threshold,
        authorized_only=recognition.authorized_only,
    )


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------


@router.get("/camera", response_model=CameraOut, summary="Camera session state")
async def camera_state(request: Request) -> CameraOut:
    return _camera_out(_get_service(request).camera.snapshot())


@router.post(
    "/camera/retry",
    response_model=FlowOut,
    responses=_FLOW_ERRORS,
    summary="Try the camera again after a failure",
)
async def camera_retry(request: Request) -> FlowOut:
    """Explicit, user-triggered retry. The server never retries on its own."""
    flow = _current_flow(_get_service(request))
    await flow.retry_camera()
    return _flow_out(flow)


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


@router.post(
    "/enrollment",
    response_model=FlowOut,
    status_code=status.HTTP_201_CREATED,
    responses=_FLOW_ERRORS,
    summary="Begin self-enrollment",
)
async def begin_enrollment(body: EnrollmentStartRequest, request: Request) -> FlowOut:
    service = _get_service(request)
    flow = service.begin_enrollment()
    try:
        flow.set_name(body.name)
    except (ValueError, DuplicateRecordError):
        service.end_flow()
        raise
    return _flow_out(flow)


@router.post(
    "/authentication",
    response_model=FlowOut,
    status_code=status.HTTP_201_CREATED,
    summary="Begin an authentication attempt",
)
async def begin_authentication(request: Request) -> FlowOut:
    return _flow_out(_get_service(request).begin_authentication())


@router.post(
    "/authenticate",
    response_model=FlowOut,
    responses=_FLOW_ERRORS,
    summary="Authenticate an uploaded image in one step",
)
async def authenticate_upload(file: UploadFile, request: Request) -> FlowOut:
    frame = await _read_upload(file, _get_settings(request))
    flow = _get_service(request).begin_authentication()
    flow.use_image(frame)
    await flow.confirm()
    return _flow_out(flow)


@router.get("/flow", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Active flow state")
async def flow_state(request: Request) -> FlowOut:
    return _flow_out(_current_flow(_get_service(request)))


@router.post("/flow/camera", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Start the camera")
async def flow_start_camera(request: Request) -> FlowOut:
    flow = _current_flow(_get_service(request))
    await flow.start_camera()
    return _flow_out(flow)


@router.post("/flow/capture", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Capture a still")
async def flow_capture(request: Request) -> FlowOut:
    flow = _current_flow(_get_service(request))
    await flow.capture()
    return _flow_out(flow)


@router.post("/flow/image", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Use an uploaded still")
async def flow_upload(file: UploadFile, request: Request) -> FlowOut:
    flow = _current_flow(_get_service(request))
    flow.use_image(await _read_upload(file, _get_settings(request)))
    return _flow_out(flow)


@router.post("/flow/retake", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Discard the preview")
async def flow_retake(request: Request) -> FlowOut:
    flow = _current_flow(_get_service(request))
    await flow.retake()
    return _flow_out(flow)


@router.post("/flow/confirm", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Confirm the preview")
async def flow_confirm(request: Request) -> FlowOut:
    flow = _current_flow(_get_service(request))
    await flow.confirm()
    return _flow_out(flow)


@router.delete("/flow", response_model=FlowOut, responses=_FLOW_ERRORS, summary="Cancel the active flow")
async def flow_cancel(request: Request) -> FlowOut:
    service = _get_service(request)
    flow = _current_flow(service)
    service.end_flow()
    return _flow_out(flow)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error(status_code: int, exc: Exception, **extra: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), **extra})


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto HTTP statuses."""

    @app.exception_handler(FlowStateError)
    async def _flow_state(request: Request, exc: FlowStateError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(DuplicateRecordError)
    async def _duplicate(request: Request, exc: DuplicateRecordError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, exc)

    @app.exception_handler(RecordNotFoundError)
    async def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(ImageDecodeError)
    async def _bad_image(request: Request, exc: ImageDecodeError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, exc)

    @app.exception_handler(CameraError)
    async def _camera(request: Request, exc: CameraError) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc, kind=exc.kind)

    @app.exception_handler(ValueError)
    async def _invalid(request: Request, exc: ValueError) -> JSONResponse:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, exc)
