"""Pydantic request/response schemas for the SnapLabel API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with its model score."""

    label: str
    confidence: float = Field(description="Model score for this label (higher is more confident)")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    label: str = Field(description="Most probable label, or 'Unknown'")
    tags: list[ImageTag] = Field(description="Top-ranked labels, highest score first")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: int = Field(description="Side length of the square input image in pixels")
    num_classes: int
    status: str = Field(description="Model status: 'active', 'unavailable', or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
