"""Classification pipeline state machine.

States::

    idle -> image_ready -> classifying -> classified
                                       -> classification_failed

Acquiring a new image from any state moves to ``image_ready`` and drops the
previous result. Opening the camera drops the active image and returns to
``idle``: a live preview and a static image are never active together.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

from ecoscan.errors import (
    Busy,
    DeviceUnavailable,
    EcoScanError,
    ModelNotReady,
    NoActiveSession,
    NoImage,
    PermissionDenied,
)
from ecoscan.events import (
    CameraError,
    ClassificationCompleted,
    ClassificationFailed,
    ClassificationStarted,
    ImageChanged,
)

if TYPE_CHECKING:
    from ecoscan.capture.session import CaptureSession, CaptureSessionManager
    from ecoscan.events import EventBus
    from ecoscan.image_source import ImageHandle, ImageSource
    from ecoscan.ml.image_classifier import ClassificationResult, WasteClassifier
    from ecoscan.ml.inference import InferencePool
    from ecoscan.ml.model_loader import ModelHandle

logger = logging.getLogger(__name__)


class PipelineState(StrEnum):
    IDLE = "idle"
    IMAGE_READY = "image_ready"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    CLASSIFICATION_FAILED = "classification_failed"


class ClassificationPipeline:
    """Drives image acquisition and classification through explicit commands."""

    def __init__(
        self,
        model: ModelHandle,
        image_source: ImageSource,
        capture: CaptureSessionManager,
        classifier: WasteClassifier,
        pool: InferencePool,
        events: EventBus,
    ) -> None:
        self._model = model
        self._image_source = image_source
        self._capture = capture
        self._classifier = classifier
        self._pool = pool
        self._events = events

        self._state = PipelineState.IDLE
        self._image: ImageHandle | None = None
        self._result: ClassificationResult | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def image(self) -> ImageHandle | None:
        return self._image

    @property
    def result(self) -> ClassificationResult | None:
        """Result for the active image, or None."""
        return self._result

    @property
    def model(self) -> ModelHandle:
        return self._model

    @property
    def camera_session(self) -> CaptureSession | None:
        return self._capture.active

    @property
    def camera_open(self) -> bool:
        return self._capture.active is not None

    # -- Image acquisition ----------------------------------------------------

    async def load_file(self, data: bytes) -> ImageHandle:
        """Use an uploaded file as the active image, closing the camera.

        On failure the active image and result are left untouched.
        """
        try:
            image = await self._image_source.from_file(data)
        except EcoScanError as exc:
            logger.warning("Rejected uploaded file: %s", exc.message)
            raise
        await self._capture.close_active()
        self._set_image(image)
        return image

    async def open_camera(self) -> CaptureSession:
        """Start a camera preview. Any active image and result are dropped."""
        try:
            session = await self._capture.open()
        except (PermissionDenied, DeviceUnavailable) as exc:
            self._events.publish(CameraError.from_error(exc))
            raise
        self._clear_image()
        return session

    async def capture(self) -> ImageHandle:
        """Freeze the current camera frame as the active image and close the camera."""
        try:
            image = await self._image_source.from_capture(self._capture.active)
        except (NoActiveSession, DeviceUnavailable) as exc:
            self._events.publish(CameraError.from_error(exc))
            raise
        self._set_image(image)
        return image

    async def close_camera(self) -> None:
        await self._capture.close_active()

    # -- Classification -------------------------------------------------------

    async def classify(self) -> ClassificationResult:
        """Classify the active image.

        Raises:
            NoImage: If no image has been acquired.
            Busy: If a classification is already running.
            ModelNotReady: If the model is loading or failed.
            InferenceError: If the forward pass failed. The image is kept.
        """
        image = self._image
        if image is None:
            raise NoImage("Upload or capture an image first")
        if self._state is PipelineState.CLASSIFYING or self._pool.busy:
            raise Busy("A classification is already running")
        if not self._model.is_ready:
            error = ModelNotReady(f"Model is {self._model.status}, cannot classify")
            self._events.publish(ClassificationFailed.from_error(error))
            raise error

        self._state = PipelineState.CLASSIFYING
        self._result = None
        self._events.publish(ClassificationStarted(image_id=image.id))

        try:
            result = await self._pool.run(self._classifier.classify, self._model, image)
        except EcoScanError as exc:
            logger.warning("Classification of %s failed: %s", image.id, exc.message)
            if self._image is image:
                self._state = PipelineState.CLASSIFICATION_FAILED
                self._events.publish(ClassificationFailed.from_error(exc))
            raise
        except asyncio.CancelledError:
            if self._image is image:
                self._state = PipelineState.IMAGE_READY
            raise

        if self._image is not image:
            logger.info("Discarding result for superseded image %s", image.id)
            return result

        self._result = result
        self._state = PipelineState.CLASSIFIED
        self._events.publish(ClassificationCompleted(result=result))
        return result

    async def shutdown(self) -> None:
        """Release the camera."""
        await self._capture.close_active()

    # -- Internal -------------------------------------------------------------

    def _set_image(self, image: ImageHandle) -> None:
        self._image = image
        self._result = None
        self._state = PipelineState.IMAGE_READY
        self._events.publish(ImageChanged.for_image(image))

    def _clear_image(self) -> None:
        if self._image is None and self._result is None:
            self._state = PipelineState.IDLE
            return
        self._image = None
        self._result = None
        self._state = PipelineState.IDLE
        self._events.publish(ImageChanged.for_image(None))
