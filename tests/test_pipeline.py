"""Tests for the classification pipeline state machine."""

from __future__ import annotations

import asyncio
import contextlib
import gc
import threading
import weakref
from collections.abc import Callable
from unittest.mock import patch

import numpy as np
import pytest
from fakes import GREEN_PNG, NOT_AN_IMAGE, RED_PNG, FakeCameraBackend, FakeSession, build_pipeline, make_settings

from ecoscan.capture.session import CaptureSessionManager
from ecoscan.config import Settings
from ecoscan.errors import (
    Busy,
    DeviceUnavailable,
    InferenceError,
    ModelLoadError,
    ModelNotReady,
    NoActiveSession,
    NoImage,
    PermissionDenied,
    UnsupportedImageFormat,
)
from ecoscan.events import (
    CameraError,
    ClassificationCompleted,
    ClassificationFailed,
    ClassificationStarted,
    EventBus,
    ImageChanged,
)
from ecoscan.ml.categories import CATEGORIES
from ecoscan.ml.inference import InferencePool
from ecoscan.ml.model_loader import ModelHandle
from ecoscan.ml.preprocessing import TensorScope
from ecoscan.pipeline import ClassificationPipeline, PipelineState

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _names(events: EventBus) -> list[str]:
    return [e.name for e in events.recent()]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Image acquisition
# ---------------------------------------------------------------------------


class TestImageAcquisition:
    def test_starts_idle(self, pipeline: ClassificationPipeline) -> None:
        assert pipeline.state is PipelineState.IDLE
        assert pipeline.image is None
        assert pipeline.result is None

    async def test_load_file_sets_image(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        image = await pipeline.load_file(GREEN_PNG)

        assert pipeline.state is PipelineState.IMAGE_READY
        assert pipeline.image is image
        assert (image.width, image.height) == (10, 10)
        changed = [e for e in events.recent() if isinstance(e, ImageChanged)]
        summary = changed[-1].image
        assert summary is not None
        assert summary.id == image.id
        assert (summary.width, summary.height) == (10, 10)

    async def test_new_image_discards_result(self, pipeline: ClassificationPipeline) -> None:
        await pipeline.load_file(GREEN_PNG)
        await pipeline.classify()
        assert pipeline.result is not None

        await pipeline.load_file(RED_PNG)

        assert pipeline.result is None
        assert pipeline.state is PipelineState.IMAGE_READY

    async def test_unsupported_file_keeps_prior_image_and_result(self, pipeline: ClassificationPipeline) -> None:
        image = await pipeline.load_file(GREEN_PNG)
        result = await pipeline.classify()

        with pytest.raises(UnsupportedImageFormat):
            await pipeline.load_file(NOT_AN_IMAGE)

        assert pipeline.image is image
        assert pipeline.result is result
        assert pipeline.state is PipelineState.CLASSIFIED

    async def test_load_file_closes_camera(
        self, pipeline: ClassificationPipeline, camera_backend: FakeCameraBackend
    ) -> None:
        await pipeline.open_camera()
        assert pipeline.camera_open

        await pipeline.load_file(GREEN_PNG)

        assert not pipeline.camera_open
        assert camera_backend.open_devices == []

    async def test_replaced_images_are_released(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        first = await pipeline.load_file(GREEN_PNG)
        handle_ref = weakref.ref(first)
        pixels_ref = weakref.ref(first.pixels)
        del first

        for _ in range(3):
            await pipeline.load_file(RED_PNG)
        gc.collect()

        assert len(events.recent()) == 4
        assert handle_ref() is None
        assert pixels_ref() is None

    async def test_rejected_file_leaves_camera_open(self, pipeline: ClassificationPipeline) -> None:
        await pipeline.open_camera()
        with pytest.raises(UnsupportedImageFormat):
            await pipeline.load_file(NOT_AN_IMAGE)
        assert pipeline.camera_open


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------


class TestCamera:
    async def test_open_camera_clears_image(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        await pipeline.load_file(GREEN_PNG)
        await pipeline.classify()

        await pipeline.open_camera()

        assert pipeline.camera_open
        assert pipeline.image is None
        assert pipeline.result is None
        assert pipeline.state is PipelineState.IDLE
        last = events.recent()[-1]
        assert isinstance(last, ImageChanged)
        assert last.image is None

    async def test_capture_sets_image_and_closes_camera(
        self, pipeline: ClassificationPipeline, camera_backend: FakeCameraBackend
    ) -> None:
        await pipeline.open_camera()
        image = await pipeline.capture()

        assert pipeline.image is image
        assert pipeline.state is PipelineState.IMAGE_READY
        assert not pipeline.camera_open
        assert camera_backend.open_devices == []

    async def test_capture_then_classify(self, pipeline: ClassificationPipeline) -> None:
        await pipeline.open_camera()
        await pipeline.capture()
        result = await pipeline.classify()
        assert result.category in CATEGORIES

    async def test_capture_without_open_camera(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        with pytest.raises(NoActiveSession):
            await pipeline.capture()
        assert isinstance(events.recent()[-1], CameraError)

    async def test_permission_denied(
        self,
        settings: Settings,
        ready_model: ModelHandle,
        pool: InferencePool,
        events: EventBus,
    ) -> None:
        capture = CaptureSessionManager(settings, backend=FakeCameraBackend(denied=[0]))
        pipeline = build_pipeline(settings, ready_model, capture, pool, events)
        image = await pipeline.load_file(GREEN_PNG)

        with pytest.raises(PermissionDenied):
            await pipeline.open_camera()

        assert not pipeline.camera_open
        assert pipeline.image is image
        last = events.recent()[-1]
        assert isinstance(last, CameraError)
        assert last.code == "permission_denied"

    async def test_unusable_frame_reports_camera_error(
        self,
        settings: Settings,
        ready_model: ModelHandle,
        pool: InferencePool,
        events: EventBus,
    ) -> None:
        backend = FakeCameraBackend(frame=np.zeros((0, 0, 3), dtype=np.uint8))
        capture = CaptureSessionManager(settings, backend=backend)
        pipeline = build_pipeline(settings, ready_model, capture, pool, events)
        await pipeline.open_camera()

        with pytest.raises(DeviceUnavailable):
            await pipeline.capture()

        assert not pipeline.camera_open
        assert backend.open_devices == []
        assert pipeline.image is None
        last = events.recent()[-1]
        assert isinstance(last, CameraError)
        assert last.code == "device_unavailable"

    async def test_repeated_open_single_stream(
        self, pipeline: ClassificationPipeline, camera_backend: FakeCameraBackend
    ) -> None:
        for _ in range(4):
            await pipeline.open_camera()
        assert len(camera_backend.open_devices) == 1

    async def test_shutdown_releases_camera(
        self, pipeline: ClassificationPipeline, camera_backend: FakeCameraBackend
    ) -> None:
        await pipeline.open_camera()
        await pipeline.shutdown()
        assert camera_backend.open_devices == []


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    async def test_classify_success(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        image = await pipeline.load_file(GREEN_PNG)
        result = await pipeline.classify()

        assert pipeline.state is PipelineState.CLASSIFIED
        assert pipeline.result is result
        assert result.image_id == image.id
        assert 0.0 <= result.confidence <= 1.0
        assert _names(events)[-2:] == ["ClassificationStarted", "ClassificationCompleted"]

    async def test_classify_twice_same_result(self, pipeline: ClassificationPipeline) -> None:
        await pipeline.load_file(GREEN_PNG)
        first = await pipeline.classify()
        second = await pipeline.classify()
        assert first == second

    async def test_classify_without_image(self, pipeline: ClassificationPipeline) -> None:
        with pytest.raises(NoImage):
            await pipeline.classify()

    async def test_loading_model_not_ready(
        self,
        settings: Settings,
        capture: CaptureSessionManager,
        pool: InferencePool,
        events: EventBus,
    ) -> None:
        pipeline = build_pipeline(settings, ModelHandle(), capture, pool, events)
        await pipeline.load_file(GREEN_PNG)

        with pytest.raises(ModelNotReady):
            await pipeline.classify()

        assert pipeline.result is None
        assert pipeline.state is PipelineState.IMAGE_READY
        assert isinstance(events.recent()[-1], ClassificationFailed)

    async def test_failed_model_not_ready(
        self,
        settings: Settings,
        capture: CaptureSessionManager,
        pool: InferencePool,
        events: EventBus,
    ) -> None:
        model = ModelHandle()
        model.mark_failed(ModelLoadError("corrupt"))
        pipeline = build_pipeline(settings, model, capture, pool, events)
        await pipeline.load_file(GREEN_PNG)

        with pytest.raises(ModelNotReady):
            await pipeline.classify()

    async def test_inference_failure_keeps_image(
        self, pipeline: ClassificationPipeline, session: FakeSession, events: EventBus
    ) -> None:
        image = await pipeline.load_file(GREEN_PNG)
        session.error = RuntimeError("bad kernel")

        with pytest.raises(InferenceError):
            await pipeline.classify()

        assert pipeline.state is PipelineState.CLASSIFICATION_FAILED
        assert pipeline.image is image
        assert pipeline.result is None
        failed = events.recent()[-1]
        assert isinstance(failed, ClassificationFailed)
        assert failed.code == "inference_error"

        session.error = None
        result = await pipeline.classify()
        assert pipeline.state is PipelineState.CLASSIFIED
        assert result.image_id == image.id

    async def test_concurrent_classify_is_busy(self, pipeline: ClassificationPipeline, session: FakeSession) -> None:
        await pipeline.load_file(GREEN_PNG)
        session.gate = threading.Event()

        first = asyncio.create_task(pipeline.classify())
        await _wait_until(session.started.is_set)
        assert pipeline.state is PipelineState.CLASSIFYING

        with pytest.raises(Busy):
            await pipeline.classify()

        session.gate.set()
        result = await first
        assert pipeline.result is result

    async def test_result_for_superseded_image_discarded(
        self, pipeline: ClassificationPipeline, session: FakeSession, events: EventBus
    ) -> None:
        await pipeline.load_file(GREEN_PNG)
        session.gate = threading.Event()

        task = asyncio.create_task(pipeline.classify())
        await _wait_until(session.started.is_set)
        replacement = await pipeline.load_file(RED_PNG)
        session.gate.set()
        await task

        assert pipeline.image is replacement
        assert pipeline.result is None
        assert pipeline.state is PipelineState.IMAGE_READY
        assert not any(isinstance(e, ClassificationCompleted) for e in events.recent())

    async def test_failure_for_superseded_image_not_reported(
        self, pipeline: ClassificationPipeline, session: FakeSession, events: EventBus
    ) -> None:
        await pipeline.load_file(GREEN_PNG)
        session.gate = threading.Event()
        session.error = RuntimeError("bad kernel")

        task = asyncio.create_task(pipeline.classify())
        await _wait_until(session.started.is_set)
        replacement = await pipeline.load_file(RED_PNG)
        session.gate.set()
        with pytest.raises(InferenceError):
            await task

        assert pipeline.image is replacement
        assert pipeline.state is PipelineState.IMAGE_READY
        assert not any(isinstance(e, ClassificationFailed) for e in events.recent())

    async def test_failed_runs_release_input_tensors(
        self, pipeline: ClassificationPipeline, session: FakeSession, events: EventBus
    ) -> None:
        tracked: list[weakref.ref[np.ndarray]] = []

        class RecordingScope(TensorScope):
            def track(self, array: np.ndarray) -> np.ndarray:
                if array.dtype == np.float32:
                    tracked.append(weakref.ref(array))
                return super().track(array)

        await pipeline.load_file(GREEN_PNG)
        session.error = RuntimeError("bad kernel")
        with patch("ecoscan.ml.image_classifier.TensorScope", RecordingScope):
            for _ in range(3):
                with contextlib.suppress(InferenceError):
                    await pipeline.classify()
        session.error = None
        gc.collect()

        assert sum(isinstance(e, ClassificationFailed) for e in events.recent()) == 3
        assert len(tracked) == 3
        assert all(ref() is None for ref in tracked)

    async def test_started_event_carries_image_id(self, pipeline: ClassificationPipeline, events: EventBus) -> None:
        image = await pipeline.load_file(GREEN_PNG)
        await pipeline.classify()
        started = [e for e in events.recent() if isinstance(e, ClassificationStarted)]
        assert started[-1].image_id == image.id


class TestEndToEnd:
    async def test_green_image_classified_with_loaded_model(self) -> None:
        settings = make_settings()
        events = EventBus()
        model = ModelHandle()
        model.mark_ready(FakeSession([0.8, 0.1, 0.1]))  # type: ignore[arg-type]
        pool = InferencePool()
        try:
            pipeline = build_pipeline(
                settings, model, CaptureSessionManager(settings, backend=FakeCameraBackend()), pool, events
            )
            await pipeline.load_file(GREEN_PNG)
            result = await pipeline.classify()
        finally:
            pool.shutdown()

        assert result.category is CATEGORIES[0]
        assert result.confidence == pytest.approx(0.8)
