"""Exception hierarchy shared across FaceGuard components."""

from __future__ import annotations


class FaceGuardError(Exception):
    """Base class for all FaceGuard errors."""


class FlowStateError(FaceGuardError):
    """An event was sent to a flow in a state that does not accept it."""


class EmbeddingError(FaceGuardError):
    """The embedding capability is unavailable or failed at runtime."""


class ImageDecodeError(FaceGuardError, ValueError):
    """Image bytes could not be decoded or exceed the configured limits."""


class GalleryError(FaceGuardError):
    """Base class for gallery mutation errors."""


class DuplicateRecordError(GalleryError):
    """A record with the same id or display name is already enrolled."""


class RecordNotFoundError(GalleryError, KeyError):
    """No record with the requested id exists."""


class CameraError(FaceGuardError):
    """Base class for capture-device errors.

    ``kind`` is a stable, machine-readable tag surfaced through the API.
    """

    kind: str = "device"


class CameraPermissionError(CameraError):
    kind = "permission"


class CameraNotFoundError(CameraError):
    kind = "not_found"


class CameraBusyError(CameraError):
    kind = "busy"


class CameraFrameError(CameraError):
    kind = "frame"


class CameraNotActiveError(CameraError):
    kind = "not_active"
