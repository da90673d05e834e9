"""Model manager: resolve, load, and cache the classification model.

Resolves the model artifact and its label file (explicit local paths or a
one-time download from HuggingFace), creates the ONNX InferenceSession and
reads the label table. The result is loaded once and reused read-only.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import (
    ExecutionMode,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    NoSuchFile,
    RuntimeException,
)

from snaplabel.ml.errors import InferenceError, ModelLoadError
from snaplabel.ml.image_classifier import ClassificationPipeline, PipelineConfig

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import ClassificationModel

logger = logging.getLogger(__name__)

_ORT_ERRORS = (Fail, InvalidArgument, InvalidGraph, InvalidProtobuf, NoSuchFile, RuntimeException)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> tuple[Path, Path]:
        """Ensure model and label files exist locally and return their paths."""
        ...

    def load(self, model_name: str) -> LoadedModel:
        """Return the cached or newly loaded model with its labels."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached models."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    repo_id: str
    filename: str
    labels_filename: str
    subfolder: str | None
    license: str
    config: PipelineConfig


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v1_1.0_224": ModelSpec(
        name="mobilenet_v1_1.0_224",
        repo_id="snaplabel/snaplabel-models",
        filename="mobilenet_v1_1.0_224.onnx",
        labels_filename="labels.txt",
        subfolder="mobilenet_v1_1.0_224",
        license="Apache-2.0",
        config=PipelineConfig(),
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry by name."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


def load_labels(path: Path, expected: int) -> tuple[str, ...]:
    """Read a newline-separated label file.

    Blank lines are skipped and surrounding whitespace is stripped.

    Raises:
        ModelLoadError: If the file cannot be read or does not hold exactly
            ``expected`` labels.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ModelLoadError(f"Cannot read label file {path}: {exc}") from exc

    labels = tuple(line.strip() for line in text.splitlines() if line.strip())
    if len(labels) != expected:
        raise ModelLoadError(f"Label file {path} has {len(labels)} labels, expected {expected}")
    return labels


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxClassificationModel:
    """Model handle wrapping an ONNX InferenceSession with one image input."""

    def __init__(self, name: str, session: InferenceSession, config: PipelineConfig) -> None:
        self._name = name
        self._session = session
        self._config = config

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._output_name: str = session.get_outputs()[0].name

        shape = list(model_input.shape)
        # NCHW exports put the channel axis second
        self._channels_first = len(shape) == 4 and shape[1] == config.channels and shape[3] != config.channels
        static = [dim for dim in shape[1:] if isinstance(dim, int)]
        if len(static) == len(shape) - 1 and math.prod(static) != config.tensor_size:
            raise ModelLoadError(
                f"Model {name} expects input shape {shape}, incompatible with {config.tensor_size} values"
            )

    @property
    def model_name(self) -> str:
        return self._name

    @property
    def input_size(self) -> int:
        return self._config.tensor_size

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Feed one flat NHWC tensor as a batch of one and return the score vector."""
        size = self._config.input_size
        batch = np.ascontiguousarray(tensor, dtype=np.float32).reshape(1, size, size, self._config.channels)
        if self._channels_first:
            batch = np.ascontiguousarray(batch.transpose(0, 3, 1, 2))
        try:
            outputs = self._session.run([self._output_name], {self._input_name: batch})
        except _ORT_ERRORS as exc:
            raise InferenceError(f"Inference failed for {self._name}: {exc}") from exc
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)


@dataclass(frozen=True)
class LoadedModel:
    """A model handle together with its index-aligned label table."""

    spec: ModelSpec
    model: ClassificationModel
    labels: tuple[str, ...]

    @property
    def pipeline(self) -> ClassificationPipeline:
        """Pipeline bound to this model's input/output contract."""
        return ClassificationPipeline(self.spec.config)


class OnnxModelManager:
    """Resolves, loads, and caches ONNX classification models."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._loaded: dict[str, LoadedModel] = {}
        self._file_paths: dict[str, tuple[Path, Path]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> tuple[Path, Path]:
        """Return local model and label paths, downloading them if needed.

        Paths from ``model_path``/``labels_path`` settings take precedence
        over the registry download.
        """
        spec = get_spec(model_name)

        cached = self._file_paths.get(model_name)
        if cached is not None and all(path.exists() for path in cached):
            return cached

        model_path = self._resolve(spec, self._settings.model_path, spec.filename)
        labels_path = self._resolve(spec, self._settings.labels_path, spec.labels_filename)
        self._file_paths[model_name] = (model_path, labels_path)
        return model_path, labels_path

    def load(self, model_name: str) -> LoadedModel:
        """Return the loaded model, creating the session on first use.

        Raises:
            ModelLoadError: If the model is not registered, or its artifact or
                label file is missing or corrupt.
        """
        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                return loaded

        try:
            spec = get_spec(model_name)
        except KeyError:
            raise ModelLoadError(f"Unknown model: {model_name}") from None
        model_path, labels_path = self.ensure_downloaded(model_name)
        labels = load_labels(labels_path, spec.config.num_classes)

        try:
            session = InferenceSession(
                str(model_path),
                sess_options=self._session_options,
                providers=self._providers,
            )
        except _ORT_ERRORS as exc:
            raise ModelLoadError(f"Cannot load model {model_name} from {model_path}: {exc}") from exc

        model = OnnxClassificationModel(spec.name, session, spec.config)

        with self._lock:
            # Double-check: another thread may have loaded it meanwhile.
            existing = self._loaded.get(model_name)
            if existing is not None:
                return existing
            loaded = LoadedModel(spec=spec, model=model, labels=labels)
            self._loaded[model_name] = loaded
            logger.info("Loaded %s with %d labels", model_name, len(labels))
            return loaded

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._loaded.keys())

    def shutdown(self) -> None:
        """Clear all cached models."""
        with self._lock:
            self._loaded.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _resolve(self, spec: ModelSpec, override: str | None, filename: str) -> Path:
        if override is not None:
            path = Path(override)
            if not path.is_file():
                raise ModelLoadError(f"File not found: {path}")
            return path

        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=spec.repo_id,
                    filename=filename,
                    subfolder=spec.subfolder,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadError(f"Cannot download {filename} for {spec.name}: {exc}") from exc
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
