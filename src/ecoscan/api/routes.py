"""API route definitions."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Query, Request, UploadFile, status

from ecoscan.api.dependencies import get_events, get_inference_pool, get_pipeline, require_api_key
from ecoscan.api.schemas import (
    CameraResponse,
    CategoriesResponse,
    CategoryInfo,
    ClassificationResponse,
    ErrorResponse,
    EventInfo,
    EventsResponse,
    ImageInfo,
    StatusResponse,
)
from ecoscan.ml.categories import CATEGORIES

if TYPE_CHECKING:
    from ecoscan.pipeline import ClassificationPipeline

router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

_CAMERA_ERRORS = {
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _camera_response(pipeline: ClassificationPipeline) -> CameraResponse:
    session = pipeline.camera_session
    if session is None:
        return CameraResponse(open=False)
    return CameraResponse(open=True, session_id=session.id, device_index=session.device_index)


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Pipeline status",
)
async def get_status(request: Request) -> StatusResponse:
    """Return model readiness, pipeline state, the active image and its result."""
    pipeline = get_pipeline(request)
    pool = get_inference_pool(request)
    model = pipeline.model
    return StatusResponse(
        model_status=str(model.status),
        model_error=model.error.message if model.error is not None else None,
        pipeline_state=str(pipeline.state),
        camera_open=pipeline.camera_open,
        image=ImageInfo.from_handle(pipeline.image) if pipeline.image is not None else None,
        result=ClassificationResponse.from_result(pipeline.result) if pipeline.result is not None else None,
        inference_active=pool.active_count,
    )


@router.get(
    "/categories",
    response_model=CategoriesResponse,
    summary="List waste categories",
)
async def list_categories() -> CategoriesResponse:
    """Return the waste categories in model output order."""
    return CategoriesResponse(categories=[CategoryInfo.from_category(c) for c in CATEGORIES])


@router.post(
    "/image",
    response_model=ImageInfo,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Upload an image",
)
async def upload_image(request: Request, file: UploadFile) -> ImageInfo:
    """Make an uploaded file the active image. Closes the camera."""
    pipeline = get_pipeline(request)
    data = await file.read()
    image = await pipeline.load_file(data)
    return ImageInfo.from_handle(image)


@router.post(
    "/camera/open",
    response_model=CameraResponse,
    responses=_CAMERA_ERRORS,
    summary="Start the camera",
)
async def open_camera(request: Request) -> CameraResponse:
    """Open a camera stream. Drops the active image and result."""
    pipeline = get_pipeline(request)
    await pipeline.open_camera()
    return _camera_response(pipeline)


@router.post(
    "/camera/capture",
    response_model=ImageInfo,
    responses=_CAMERA_ERRORS,
    summary="Capture a photo",
)
async def capture_photo(request: Request) -> ImageInfo:
    """Freeze the current camera frame as the active image and close the camera."""
    pipeline = get_pipeline(request)
    image = await pipeline.capture()
    return ImageInfo.from_handle(image)


@router.post(
    "/camera/close",
    response_model=CameraResponse,
    summary="Stop the camera",
)
async def close_camera(request: Request) -> CameraResponse:
    """Close the camera stream, if open."""
    pipeline = get_pipeline(request)
    await pipeline.close_camera()
    return _camera_response(pipeline)


@router.post(
    "/classify",
    response_model=ClassificationResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the active image",
)
async def classify(
    request: Request,
    wait: bool = Query(default=False, description="Wait for the model to finish loading first"),
    timeout: float = Query(default=10.0, gt=0, description="Seconds to wait when wait=true"),
) -> ClassificationResponse:
    """Classify the active image into a waste category."""
    pipeline = get_pipeline(request)
    if wait:
        with contextlib.suppress(TimeoutError):
            await pipeline.model.wait_settled(timeout=timeout)
    result = await pipeline.classify()
    return ClassificationResponse.from_result(result)


@router.get(
    "/events",
    response_model=EventsResponse,
    summary="Recent presentation events",
)
async def list_events(
    request: Request,
    limit: int = Query(default=50, ge=1, le=1000),
) -> EventsResponse:
    """Return the most recent events, oldest first."""
    events = get_events(request)
    return EventsResponse(events=[EventInfo.from_event(e) for e in events.recent(limit)])
