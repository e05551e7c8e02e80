"""Pydantic response schemas for the EcoScan API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ecoscan.events import Event
    from ecoscan.image_source import ImageHandle
    from ecoscan.ml.categories import Category
    from ecoscan.ml.image_classifier import ClassificationResult


class CategoryInfo(BaseModel):
    """A waste category with display metadata."""

    id: str
    label: str
    icon: str
    color: str

    @classmethod
    def from_category(cls, category: Category) -> CategoryInfo:
        return cls(id=str(category.id), label=category.label, icon=category.icon, color=category.color)


class CategoriesResponse(BaseModel):
    categories: list[CategoryInfo]


class ImageInfo(BaseModel):
    """The active image."""

    id: str
    source: str = Field(description="'file' or 'camera'")
    width: int
    height: int

    @classmethod
    def from_handle(cls, image: ImageHandle) -> ImageInfo:
        return cls(id=image.id, source=str(image.source), width=image.width, height=image.height)


class ClassificationResponse(BaseModel):
    """Top-1 classification of the active image."""

    category: CategoryInfo
    class_index: int
    confidence: float = Field(ge=0.0, le=1.0)
    image_id: str

    @classmethod
    def from_result(cls, result: ClassificationResult) -> ClassificationResponse:
        return cls(
            category=CategoryInfo.from_category(result.category),
            class_index=result.class_index,
            confidence=result.confidence,
            image_id=result.image_id,
        )


class CameraResponse(BaseModel):
    """Camera session state."""

    open: bool
    session_id: str | None = None
    device_index: int | None = None


class StatusResponse(BaseModel):
    """Pipeline status."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    model_status: str = Field(description="'loading', 'ready', or 'failed'")
    model_error: str | None = None
    pipeline_state: str
    camera_open: bool
    image: ImageInfo | None = None
    result: ClassificationResponse | None = None
    inference_active: int


class EventInfo(BaseModel):
    name: str
    timestamp: float
    payload: dict[str, object]

    @classmethod
    def from_event(cls, event: Event) -> EventInfo:
        return cls(name=event.name, timestamp=event.timestamp, payload=event.payload())


class EventsResponse(BaseModel):
    events: list[EventInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    error: str
