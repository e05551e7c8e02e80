"""Shared fixtures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fakes import FakeCameraBackend, FakeSession, build_pipeline, make_settings

from ecoscan.capture.session import CaptureSessionManager
from ecoscan.events import EventBus
from ecoscan.ml.inference import InferencePool
from ecoscan.ml.model_loader import ModelHandle
from ecoscan.pipeline import ClassificationPipeline

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ecoscan.config import Settings


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def ready_model(session: FakeSession) -> ModelHandle:
    handle = ModelHandle()
    handle.mark_ready(session)  # type: ignore[arg-type]
    return handle


@pytest.fixture()
def camera_backend() -> FakeCameraBackend:
    return FakeCameraBackend()


@pytest.fixture()
def capture(settings: Settings, camera_backend: FakeCameraBackend) -> CaptureSessionManager:
    return CaptureSessionManager(settings, backend=camera_backend)


@pytest.fixture()
def events() -> EventBus:
    return EventBus(history=100)


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool()
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def pipeline(
    settings: Settings,
    ready_model: ModelHandle,
    capture: CaptureSessionManager,
    pool: InferencePool,
    events: EventBus,
) -> ClassificationPipeline:
    return build_pipeline(settings, ready_model, capture, pool, events)
