"""Presentation events published by the pipeline.

The presentation layer is not part of this service; it subscribes to these
events (or polls ``GET /api/v1/events``) and renders them.

Events are kept in a history buffer and carry plain values only: image
metadata rather than ``ImageHandle`` objects, error code and detail rather
than exception objects.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Self

    from ecoscan.errors import EcoScanError
    from ecoscan.image_source import ImageHandle
    from ecoscan.ml.image_classifier import ClassificationResult
    from ecoscan.ml.model_loader import ModelStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for presentation events."""

    timestamp: float = field(default_factory=time.time, kw_only=True)

    @property
    def name(self) -> str:
        return type(self).__name__

    def payload(self) -> dict[str, object]:
        return {}


@dataclass(frozen=True)
class ModelStatusChanged(Event):
    status: ModelStatus

    def payload(self) -> dict[str, object]:
        return {"status": str(self.status)}


@dataclass(frozen=True)
class ImageSummary:
    """Metadata of an acquired image."""

    id: str
    source: str
    width: int
    height: int

    @classmethod
    def from_handle(cls, image: ImageHandle) -> ImageSummary:
        return cls(id=image.id, source=str(image.source), width=image.width, height=image.height)


@dataclass(frozen=True)
class ImageChanged(Event):
    image: ImageSummary | None

    @classmethod
    def for_image(cls, image: ImageHandle | None) -> ImageChanged:
        return cls(image=ImageSummary.from_handle(image) if image is not None else None)

    def payload(self) -> dict[str, object]:
        if self.image is None:
            return {"image": None}
        return {
            "image": {
                "id": self.image.id,
                "source": self.image.source,
                "width": self.image.width,
                "height": self.image.height,
            }
        }


@dataclass(frozen=True)
class ClassificationStarted(Event):
    image_id: str

    def payload(self) -> dict[str, object]:
        return {"image_id": self.image_id}


@dataclass(frozen=True)
class ClassificationCompleted(Event):
    result: ClassificationResult

    def payload(self) -> dict[str, object]:
        return {
            "category_id": str(self.result.category_id),
            "label": self.result.category.label,
            "confidence": self.result.confidence,
        }


@dataclass(frozen=True)
class ErrorEvent(Event):
    """An error reported to the presentation layer by code and message."""

    code: str
    detail: str

    @classmethod
    def from_error(cls, error: EcoScanError) -> Self:
        return cls(code=error.code, detail=error.message)

    def payload(self) -> dict[str, object]:
        return {"error": self.code, "detail": self.detail}


@dataclass(frozen=True)
class ClassificationFailed(ErrorEvent):
    pass


@dataclass(frozen=True)
class CameraError(ErrorEvent):
    pass


class EventBus:
    """Synchronous fan-out of events to subscribers, with a bounded history."""

    def __init__(self, history: int = 100) -> None:
        self._subscribers: list[Callable[[Event], None]] = []
        self._history: deque[Event] = deque(maxlen=history)

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: Event) -> None:
        self._history.append(event)
        logger.debug("Event %s %s", event.name, event.payload())
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber %r failed on %s", callback, event.name)

    def recent(self, limit: int | None = None) -> list[Event]:
        """Most recent events, oldest first."""
        events = list(self._history)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
