"""Request dependencies: app-state accessors and API key authentication.

Everything built once by ``init_state`` is reached through these functions,
so routes declare what they need instead of reading ``app.state`` directly.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from snaplabel.config import Settings
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_manager import LoadedModel, ModelManager

_bearer_scheme = HTTPBearer(auto_error=False, description="Required when SNAPLABEL_API_KEY is set")


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def get_loaded_model(request: Request) -> LoadedModel | None:
    """Return the startup-loaded model, or None when loading failed."""
    loaded: LoadedModel | None = request.app.state.loaded_model
    return loaded


def require_loaded_model(loaded: Annotated[LoadedModel | None, Depends(get_loaded_model)]) -> LoadedModel:
    """Reject the request with 503 while classification is disabled."""
    if loaded is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Classification model is not available",
        )
    return loaded


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
PoolDep = Annotated[InferencePool, Depends(get_inference_pool)]
ManagerDep = Annotated[ModelManager, Depends(get_model_manager)]
OptionalModelDep = Annotated[LoadedModel | None, Depends(get_loaded_model)]
ModelDep = Annotated[LoadedModel, Depends(require_loaded_model)]


async def verify_api_key(
    settings: SettingsDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Compare the Bearer token with SNAPLABEL_API_KEY; no key configured means open access."""
    if settings.api_key is None:
        return

    token = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(token.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
