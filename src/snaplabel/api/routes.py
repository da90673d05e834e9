"""API route definitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, UploadFile, status

from snaplabel.api.dependencies import (
    ManagerDep,
    ModelDep,
    OptionalModelDep,
    PoolDep,
    SettingsDep,
    verify_api_key,
)
from snaplabel.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from snaplabel.ml.errors import InferenceError, InvalidImageError
from snaplabel.ml.image_classifier import ClassificationResult
from snaplabel.ml.model_manager import MODEL_REGISTRY, LoadedModel
from snaplabel.ml.preprocessing import decode_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _classify_bytes(
    image_bytes: bytes,
    loaded: LoadedModel,
    max_pixels: int,
    top_k: int,
) -> tuple[str, list[ClassificationResult]]:
    image = decode_image(image_bytes, max_pixels=max_pixels)
    return loaded.pipeline.classify_ranked(image, loaded.model, loaded.labels, top_k)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image",
)
async def classify_image(
    file: UploadFile,
    settings: SettingsDep,
    loaded: ModelDep,
    pool: PoolDep,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return the top label with ranked tags."""
    image_bytes = await file.read(settings.max_file_size + 1)
    if len(image_bytes) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        label, ranked = await pool.run(
            _classify_bytes,
            image_bytes,
            loaded,
            settings.max_image_pixels,
            settings.top_k,
        )
    except InvalidImageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InferenceError as exc:
        logger.exception("Inference failed for %s", file.filename)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc

    logger.info("Classified %s as %r", file.filename, label)
    return ClassifyImageResponse(
        label=label,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in ranked],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(
    settings: SettingsDep,
    pool: PoolDep,
    manager: ManagerDep,
    loaded: OptionalModelDep,
) -> HealthResponse:
    """Return service health; 'degraded' while classification is disabled."""
    stats = pool.stats()
    return HealthResponse(
        status="ok" if loaded is not None else "degraded",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(settings: SettingsDep, loaded: OptionalModelDep) -> ModelsResponse:
    """Return registered models and their status under the current configuration."""
    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name != settings.classification_model:
            model_status = "available"
        elif loaded is not None:
            model_status = "active"
        else:
            model_status = "unavailable"

        models.append(
            ModelInfo(
                name=spec.name,
                input_size=spec.config.input_size,
                num_classes=spec.config.num_classes,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
