"""ONNX weights and sessions for the detector and recognizer.

Weights are fetched from the HuggingFace Hub on first use and kept under
``models_dir``. Each model gets one ``InferenceSession`` for the life of the
process; FaceGuard only ever runs the configured detector and recognizer pair,
so sessions are dropped only when the service shuts down.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from faceguard.config import Settings

logger = logging.getLogger(__name__)

WEIGHTS_REPO = "danielcopper/recognizex-models"

Provider = str | tuple[str, dict[str, object]]


class ModelManager(Protocol):
    def get_session(self, model_name: str) -> InferenceSession: ...

    def loaded_models(self) -> list[str]: ...

    def close(self) -> None: ...


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"


@dataclass(frozen=True)
class ModelSpec:
    """Where a model's weights live and what it is for.

    ``embedding_dim`` is set for recognizers only.
    """

    name: str
    task: ModelTask
    repo_id: str
    filename: str
    license: str
    subfolder: str | None = None
    insightface: bool = False
    embedding_dim: int = 0

    @property
    def relative_path(self) -> Path:
        return Path(self.subfolder or "") / self.filename


def _registry(*specs: ModelSpec) -> dict[str, ModelSpec]:
    return {spec.name: spec for spec in specs}


MODEL_REGISTRY = _registry(
    ModelSpec("retinaface_resnet34", ModelTask.FACE_DETECTION, WEIGHTS_REPO, "retinaface_resnet34.onnx", "MIT"),
    ModelSpec("retinaface_mobilenetv2", ModelTask.FACE_DETECTION, WEIGHTS_REPO, "retinaface_mobilenetv2.onnx", "MIT"),
    ModelSpec(
        "auraface_v1",
        ModelTask.FACE_RECOGNITION,
        "fal/AuraFace-v1",
        "glintr100.onnx",
        "Apache-2.0",
        embedding_dim=512,
    ),
    ModelSpec(
        "w600k_r50",
        ModelTask.FACE_RECOGNITION,
        "public-data/insightface",
        "w600k_r50.onnx",
        "Non-commercial (InsightFace)",
        subfolder="models/buffalo_l",
        insightface=True,
        embedding_dim=512,
    ),
)


def get_spec(model_name: str, task: ModelTask | None = None) -> ModelSpec:
    """Look up a registry entry, optionally checking its task."""
    spec = MODEL_REGISTRY.get(model_name)
    if spec is None:
        raise KeyError(f"Unknown model: {model_name}")
    if task is not None and spec.task != task:
        raise ValueError(f"Model '{model_name}' is a {spec.task} model, expected {task}")
    return spec


def execution_providers(settings: Settings) -> list[Provider]:
    """ONNX Runtime providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    options = SessionOptions()
    options.intra_op_num_threads = settings.intra_op_threads
    options.inter_op_num_threads = settings.inter_op_threads
    options.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    options.enable_mem_pattern = True
    options.enable_mem_reuse = True
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        options.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return options


class OnnxModelManager:
    """Resolves weights and holds one inference session per model."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._providers = execution_providers(settings)
        self._options = session_options(settings)
        self._sessions: dict[str, InferenceSession] = {}
        # One lock per model so a slow download never blocks the other model.
        self._guard = threading.Lock()
        self._model_locks: dict[str, threading.Lock] = {}

    def weights_path(self, model_name: str) -> Path:
        """Local path of a model's weights, downloading them on first use."""
        spec = get_spec(model_name)
        if spec.insightface and not self._settings.accept_insightface_license:
            raise RuntimeError(f"Model '{spec.name}' requires FACEGUARD_ACCEPT_INSIGHTFACE_LICENSE=true")

        local = self._models_dir / spec.relative_path
        if local.exists():
            return local

        self._models_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Downloading %s from %s", spec.name, spec.repo_id)
        return Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )

    def get_session(self, model_name: str) -> InferenceSession:
        session = self._sessions.get(model_name)
        if session is not None:
            return session

        with self._guard:
            model_lock = self._model_locks.setdefault(model_name, threading.Lock())
        with model_lock:
            session = self._sessions.get(model_name)
            if session is None:
                session = InferenceSession(
                    str(self.weights_path(model_name)),
                    sess_options=self._options,
                    providers=self._providers,
                )
                self._sessions[model_name] = session
                logger.info("Loaded %s (providers=%s)", model_name, session.get_providers())
            return session

    def loaded_models(self) -> list[str]:
        return list(self._sessions)

    def close(self) -> None:
        if self._sessions:
            logger.info("Releasing sessions: %s", ", ".join(self._sessions))
        self._sessions.clear()
