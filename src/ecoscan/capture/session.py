"""Camera session lifecycle: open, freeze-frame capture, release.

At most one session is open at any time. Opening a new session closes the
previous one, and capturing a frame closes the session it came from.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import uuid4

from ecoscan.capture.camera import OpenCVCameraBackend
from ecoscan.errors import DeviceUnavailable, NoActiveSession, PermissionDenied
from ecoscan.image_source import ImageHandle, ImageSourceKind

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from ecoscan.capture.camera import CameraBackend, CameraDevice
    from ecoscan.config import Settings

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"


class CaptureSession:
    """An open camera stream."""

    def __init__(self, device_index: int, device: CameraDevice) -> None:
        self.id = uuid4().hex
        self.device_index = device_index
        self.state = SessionState.OPEN
        self._device: CameraDevice | None = device

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def read(self) -> NDArray[np.uint8]:
        if self._device is None:
            raise NoActiveSession("Camera session is closed")
        return self._device.read()

    def release(self) -> None:
        device, self._device = self._device, None
        self.state = SessionState.CLOSED
        if device is not None:
            device.release()


class CaptureSessionManager:
    """Owns the single camera stream."""

    def __init__(self, settings: Settings, backend: CameraBackend | None = None) -> None:
        self._settings = settings
        self._backend: CameraBackend = backend if backend is not None else OpenCVCameraBackend()
        self._active: CaptureSession | None = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> CaptureSession | None:
        """The open session, if any."""
        return self._active

    def candidate_indices(self) -> list[int]:
        """Device indices to try, environment-facing device first."""
        indices: list[int] = []
        if self._settings.camera_preferred_index is not None:
            indices.append(self._settings.camera_preferred_index)
        for index in self._settings.camera_fallback_indices:
            if index not in indices:
                indices.append(index)
        return indices

    async def open(self) -> CaptureSession:
        """Open a camera stream, closing any stream that is already open.

        Raises:
            PermissionDenied: If access was denied and no device could be opened.
            DeviceUnavailable: If no device could be opened.
        """
        async with self._lock:
            self._release(self._active)

            denied: PermissionDenied | None = None
            for index in self.candidate_indices():
                try:
                    device = await asyncio.to_thread(self._backend.open, index)
                except PermissionDenied as exc:
                    logger.warning("Camera %d: %s", index, exc)
                    denied = exc
                    continue
                except DeviceUnavailable as exc:
                    logger.info("Camera %d unavailable: %s", index, exc)
                    continue

                session = CaptureSession(index, device)
                self._active = session
                logger.info("Opened camera session %s on device %d", session.id, index)
                return session

        if denied is not None:
            raise PermissionDenied("Camera access denied. Allow camera access to use this feature.") from denied
        raise DeviceUnavailable("No camera device available")

    async def capture_frame(self, session: CaptureSession | None) -> ImageHandle:
        """Snapshot the current frame and close the session.

        Raises:
            NoActiveSession: If ``session`` is not the open session.
            DeviceUnavailable: If the frame could not be read.
        """
        async with self._lock:
            if session is None or session is not self._active or not session.is_open:
                raise NoActiveSession("No open camera session to capture from")
            try:
                frame = await asyncio.to_thread(session.read)
            finally:
                self._release(session)

        try:
            handle = ImageHandle.from_array(frame, ImageSourceKind.CAMERA)
        except ValueError as exc:
            raise DeviceUnavailable(f"Camera {session.device_index} returned an unusable frame") from exc
        logger.info("Captured frame %s from session %s (%dx%d)", handle.id, session.id, handle.width, handle.height)
        return handle

    async def close(self, session: CaptureSession | None = None) -> None:
        """Close ``session`` (default: the open one). Idempotent."""
        async with self._lock:
            self._release(session if session is not None else self._active)

    async def close_active(self) -> None:
        await self.close()

    def _release(self, session: CaptureSession | None) -> None:
        if session is None:
            return
        if self._active is session:
            self._active = None
        if not session.is_open:
            return
        try:
            session.release()
        except Exception:
            logger.exception("Error releasing camera session %s", session.id)
        else:
            logger.info("Closed camera session %s", session.id)
