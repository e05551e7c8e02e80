"""Model loader: wait for the ONNX runtime, resolve the model asset, load it once.

The loaded session lives in a ``ModelHandle`` owned by the application and
passed explicitly to whoever runs inference.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from ecoscan.errors import DependencyUnavailable, EcoScanError, ModelLoadError
from ecoscan.events import ModelStatusChanged

if TYPE_CHECKING:
    from collections.abc import Callable

    from ecoscan.config import Settings
    from ecoscan.events import EventBus

logger = logging.getLogger(__name__)


_DEVICE_PROVIDERS: dict[str, str] = {
    "cpu": "CPUExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
}


class ModelStatus(StrEnum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelHandle:
    """The classifier session and its readiness state.

    Starts in ``loading`` and settles exactly once, to ``ready`` or ``failed``.
    """

    def __init__(self) -> None:
        self.status = ModelStatus.LOADING
        self.session: InferenceSession | None = None
        self.error: EcoScanError | None = None
        self.input_name: str | None = None
        self.input_shape: list[int | str | None] | None = None
        self.output_name: str | None = None
        self._settled = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self.status is ModelStatus.READY

    def mark_ready(self, session: InferenceSession) -> None:
        self._check_loading()
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise ModelLoadError("Model must have at least one input and one output")
        self.session = session
        self.input_name = inputs[0].name
        self.input_shape = list(inputs[0].shape)
        self.output_name = outputs[0].name
        self.status = ModelStatus.READY
        self._settled.set()

    def mark_failed(self, error: EcoScanError) -> None:
        self._check_loading()
        self.error = error
        self.status = ModelStatus.FAILED
        self._settled.set()

    async def wait_settled(self, timeout: float | None = None) -> ModelStatus:
        """Wait until the model is ready or failed and return the status.

        Raises:
            TimeoutError: If ``timeout`` elapses first.
        """
        await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        return self.status

    def _check_loading(self) -> None:
        if self.status is not ModelStatus.LOADING:
            raise RuntimeError(f"Model handle already settled as {self.status}")


def onnxruntime_probe(device: str) -> Callable[[], bool]:
    """Return a probe reporting whether the execution provider for ``device`` is available."""
    provider = _DEVICE_PROVIDERS[device]

    def probe() -> bool:
        return provider in onnxruntime.get_available_providers()

    return probe


class ModelLoader:
    """Loads the classifier into a ModelHandle, once."""

    def __init__(
        self,
        settings: Settings,
        handle: ModelHandle,
        events: EventBus | None = None,
        runtime_probe: Callable[[], bool] | None = None,
    ) -> None:
        self._settings = settings
        self._handle = handle
        self._events = events
        self._runtime_probe = runtime_probe if runtime_probe is not None else onnxruntime_probe(settings.device)
        self._task: asyncio.Future[ModelHandle] | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    @property
    def handle(self) -> ModelHandle:
        return self._handle

    # -- Public API ---------------------------------------------------------

    async def load(self) -> ModelHandle:
        """Load the model. Later calls wait for the first load instead of reloading.

        Raises:
            DependencyUnavailable: If the runtime never became available.
            ModelLoadError: If the model asset could not be loaded.
        """
        if self._task is None:
            self._task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Cancel a load still in progress and wait for it to finish.

        A handle that never settled is marked failed.
        """
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._handle.status is ModelStatus.LOADING:
            self._fail(ModelLoadError("Model loading was cancelled"))

    def resolve_model_path(self) -> Path:
        """Return the local model file, downloading it from the Hub if configured."""
        path = Path(self._settings.model_path)
        if path.is_file():
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(f"Model file not found: {path}")

        models_dir = Path(self._settings.models_dir)
        models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=self._settings.model_filename,
                local_dir=str(models_dir),
            )
        )
        logger.info("Downloaded %s from %s to %s", self._settings.model_filename, repo_id, downloaded)
        return downloaded

    # -- Internal -----------------------------------------------------------

    async def _load(self) -> ModelHandle:
        self._publish()
        try:
            await self._wait_for_runtime()
        except DependencyUnavailable as exc:
            self._fail(exc)
            raise

        try:
            path = await asyncio.to_thread(self.resolve_model_path)
            session = await asyncio.to_thread(self._create_session, path)
            self._handle.mark_ready(session)
        except Exception as exc:
            error = exc if isinstance(exc, ModelLoadError) else ModelLoadError(f"Failed to load model: {exc}")
            self._fail(error)
            if error is exc:
                raise
            raise error from exc

        handle = self._handle
        logger.info("Model ready (input=%s %s, output=%s)", handle.input_name, handle.input_shape, handle.output_name)
        self._publish()
        return self._handle

    async def _wait_for_runtime(self) -> None:
        attempts = self._settings.runtime_poll_attempts
        interval = self._settings.runtime_poll_interval
        for attempt in range(1, attempts + 1):
            try:
                available = self._runtime_probe()
            except Exception:
                logger.debug("Runtime probe raised on attempt %d", attempt, exc_info=True)
                available = False
            if available:
                logger.info("Inference runtime available after %d attempt(s)", attempt)
                return
            if attempt < attempts:
                await asyncio.sleep(interval)

        raise DependencyUnavailable(
            f"{_DEVICE_PROVIDERS[self._settings.device]} not available after {attempts} attempts"
        )

    def _create_session(self, path: Path) -> InferenceSession:
        logger.info("Loading model from %s (providers=%s)", path, self._providers)
        return InferenceSession(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )

    def _fail(self, error: EcoScanError) -> None:
        logger.error("Model load failed: %s", error)
        self._handle.mark_failed(error)
        self._publish()

    def _publish(self) -> None:
        if self._events is not None:
            self._events.publish(ModelStatusChanged(status=self._handle.status))

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
