"""Request dependencies: typed access to app state and API key check."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ecoscan.errors import Unauthorized

if TYPE_CHECKING:
    from ecoscan.config import Settings
    from ecoscan.events import EventBus
    from ecoscan.ml.inference import InferencePool
    from ecoscan.pipeline import ClassificationPipeline

_bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def get_events(request: Request) -> EventBus:
    events: EventBus = request.app.state.events
    return events


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


async def require_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <ECOSCAN_API_KEY>``.

    Open access when no key is configured.
    """
    expected = get_app_settings(request).api_key
    if expected is None:
        return
    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise Unauthorized("Invalid or missing API key")
