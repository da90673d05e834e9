"""Exceptions raised by the classification pipeline and its loaders."""

from __future__ import annotations


class ClassificationError(Exception):
    """Base class for all classification failures."""


class InvalidImageError(ClassificationError):
    """The image is missing, zero-sized, oversized, or cannot be decoded."""


class ModelLoadError(ClassificationError):
    """The model artifact or label file is missing or corrupt."""


class InferenceError(ClassificationError):
    """The model is not loaded, or the tensor does not fit the model."""
