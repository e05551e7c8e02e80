"""Inference concurrency layer.

Architecture:
    pipeline (async) -> asyncio.Semaphore(1) -> ThreadPoolExecutor(1) -> ONNX inference

A run submitted while another is in flight is rejected with ``Busy``
instead of queueing.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

from ecoscan.errors import Busy

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Manages the semaphore and worker thread for ML inference."""

    def __init__(self, max_workers: int = 1) -> None:
        self._semaphore = asyncio.Semaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread.

        Raises:
            Busy: If every worker is already running an inference.
        """
        if self._semaphore.locked():
            raise Busy("A classification is already running")

        async with self._semaphore:
            with self._counter_lock:
                self._active_count += 1
            try:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, *args)
            finally:
                with self._counter_lock:
                    self._active_count -= 1

    @property
    def busy(self) -> bool:
        """True while every worker is taken."""
        return self._semaphore.locked()

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
