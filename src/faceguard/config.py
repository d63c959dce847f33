"""Environment-based configuration for FaceGuard."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEGUARD_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEGUARD_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "retinaface_resnet34"
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False
    models_dir: Path = Path("models")
    min_detection_score: float = Field(default=0.8, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # GPU memory
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Recognition
    confidence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    authorized_only: bool = True
    fallback_dim: int = Field(default=128, ge=8)

    # Storage (database_url overrides the sqlite file under data_dir)
    data_dir: Path = Path("data")
    database_url: str | None = None
    samples_dir: Path = Path("samples")

    # Camera
    camera_index: int = Field(default=0, ge=0)
    camera_scan_max_index: int = Field(default=4, ge=0)
    camera_width: int = Field(default=640, ge=1)
    camera_height: int = Field(default=480, ge=1)
    camera_metadata_timeout: float = Field(default=5.0, gt=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
