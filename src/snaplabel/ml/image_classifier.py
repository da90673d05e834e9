"""Image classification pipeline: preprocess, infer, decode.

The model handle and label table are loaded once by the caller and passed
explicitly into every call; the pipeline itself holds no mutable state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from snaplabel.ml.errors import InferenceError
from snaplabel.ml.preprocessing import resize_and_normalize

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

    from snaplabel.ml.preprocessing import ImageLike

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"


@dataclass(frozen=True)
class PipelineConfig:
    """Fixed input/output contract of a classification model.

    Defaults describe MobileNet v1 (224x224 RGB input scaled to [-1, 1],
    1001 ImageNet classes including background).
    """

    input_size: int = 224
    channels: int = 3
    num_classes: int = 1001
    normalization_offset: float = 127.5
    normalization_scale: float = 127.5

    def __post_init__(self) -> None:
        if self.input_size <= 0:
            raise ValueError(f"input_size must be positive, got {self.input_size}")
        if self.channels != 3:
            raise ValueError(f"Only RGB input is supported, got {self.channels} channels")
        if self.num_classes <= 0:
            raise ValueError(f"num_classes must be positive, got {self.num_classes}")
        if self.normalization_scale == 0:
            raise ValueError("normalization_scale must be non-zero")

    @property
    def tensor_size(self) -> int:
        """Number of floats in one input tensor."""
        return self.input_size * self.input_size * self.channels


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


class ClassificationModel(Protocol):
    """Protocol for a loaded, fixed-input classification model."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    @property
    def input_size(self) -> int:
        """Return the number of floats the model consumes per image."""
        ...

    def predict(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one forward pass.

        Args:
            tensor: Flat float32 input tensor of length ``input_size``.

        Returns:
            Flat score vector, one entry per class.
        """
        ...


def _scores(output: ArrayLike) -> NDArray[np.float64]:
    scores = np.asarray(output, dtype=np.float64).reshape(-1)
    # NaN never wins a strict ">" comparison
    return np.where(np.isnan(scores), -np.inf, scores)


def _check_labels(size: int, labels: Sequence[str]) -> None:
    if len(labels) < size:
        raise InferenceError(f"Label table has {len(labels)} entries but output has {size} scores")


class ClassificationPipeline:
    """Turns one arbitrary-size image into one label using a fixed model."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config if config is not None else PipelineConfig()

    def preprocess(self, image: ImageLike) -> NDArray[np.float32]:
        """Resize, unpack and normalize an image into a flat input tensor.

        Raises:
            InvalidImageError: If the image is empty or not a pixel grid.
        """
        cfg = self.config
        return resize_and_normalize(
            image,
            size=cfg.input_size,
            offset=cfg.normalization_offset,
            scale=cfg.normalization_scale,
        )

    def infer(self, tensor: NDArray[np.float32], model: ClassificationModel | None) -> NDArray[np.float32]:
        """Run the model on a preprocessed tensor.

        Raises:
            InferenceError: If the model is missing, the tensor does not match
                the model's input size, or the output has the wrong length.
        """
        if model is None:
            raise InferenceError("Model is not loaded")

        flat = np.asarray(tensor, dtype=np.float32).reshape(-1)
        expected = model.input_size
        if flat.size != expected or flat.size != self.config.tensor_size:
            raise InferenceError(
                f"Input tensor has {flat.size} values, model {model.model_name} expects {expected}"
            )

        output = np.asarray(model.predict(flat), dtype=np.float32).reshape(-1)
        if output.size != self.config.num_classes:
            raise InferenceError(
                f"Model {model.model_name} returned {output.size} scores, expected {self.config.num_classes}"
            )
        return output

    def decode(self, output: ArrayLike, labels: Sequence[str]) -> str:
        """Return the label with the highest score.

        Ties go to the lowest index. An empty output yields ``UNKNOWN_LABEL``.
        """
        scores = _scores(output)
        if scores.size == 0 or np.all(np.isneginf(scores)):
            return UNKNOWN_LABEL
        _check_labels(scores.size, labels)
        # argmax returns the first occurrence of the maximum
        return labels[int(np.argmax(scores))]

    def top_k(self, output: ArrayLike, labels: Sequence[str], k: int) -> list[ClassificationResult]:
        """Return the ``k`` best labels, highest score first, ties by lowest index."""
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")
        scores = _scores(output)
        if scores.size == 0:
            return []
        _check_labels(scores.size, labels)
        order = np.argsort(-scores, kind="stable")
        order = order[scores[order] > -np.inf][:k]
        return [ClassificationResult(label=labels[i], confidence=float(scores[i])) for i in order]

    def classify(self, image: ImageLike, model: ClassificationModel | None, labels: Sequence[str]) -> str:
        """Preprocess, infer and decode a single image."""
        output = self.infer(self.preprocess(image), model)
        return self.decode(output, labels)

    def classify_ranked(
        self,
        image: ImageLike,
        model: ClassificationModel | None,
        labels: Sequence[str],
        k: int,
    ) -> tuple[str, list[ClassificationResult]]:
        """Like :meth:`classify`, but also return the ``k`` best tags from the same pass."""
        output = self.infer(self.preprocess(image), model)
        return self.decode(output, labels), self.top_k(output, labels, k)


_default_pipeline = ClassificationPipeline()


def preprocess(image: ImageLike) -> NDArray[np.float32]:
    """Preprocess with the default MobileNet configuration."""
    return _default_pipeline.preprocess(image)


def infer(tensor: NDArray[np.float32], model: ClassificationModel | None) -> NDArray[np.float32]:
    """Infer with the default MobileNet configuration."""
    return _default_pipeline.infer(tensor, model)


def decode(output: ArrayLike, labels: Sequence[str]) -> str:
    """Arg-max decode with the lowest-index tie-break."""
    return _default_pipeline.decode(output, labels)


def classify(image: ImageLike, model: ClassificationModel | None, labels: Sequence[str]) -> str:
    """Classify one image with the default MobileNet configuration."""
    return _default_pipeline.classify(image, model, labels)
