"""Camera device access.

Implementations: OpenCV VideoCapture (default). Tests plug in their own
backend through the ``CameraBackend`` protocol.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from ecoscan.errors import DeviceUnavailable, PermissionDenied

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class CameraDevice(Protocol):
    """An opened camera stream."""

    def read(self) -> NDArray[np.uint8]:
        """Grab the current frame.

        Returns:
            HxWx3 RGB uint8 array.

        Raises:
            DeviceUnavailable: If no frame could be read.
        """
        ...

    def release(self) -> None:
        """Release the device. Safe to call more than once."""
        ...


class CameraBackend(Protocol):
    """Protocol for opening camera devices by index."""

    def open(self, index: int) -> CameraDevice:
        """Open the device at ``index``.

        Raises:
            PermissionDenied: If access to the device is not permitted.
            DeviceUnavailable: If the device does not exist or cannot be opened.
        """
        ...


class OpenCVCamera:
    """A camera stream backed by ``cv2.VideoCapture``."""

    def __init__(self, capture: cv2.VideoCapture, index: int) -> None:
        self._capture: cv2.VideoCapture | None = capture
        self._index = index

    def read(self) -> NDArray[np.uint8]:
        if self._capture is None:
            raise DeviceUnavailable(f"Camera {self._index} is released")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise DeviceUnavailable(f"Camera {self._index} returned no frame")
        try:
            return _to_rgb(frame)
        except (cv2.error, ValueError) as exc:
            raise DeviceUnavailable(f"Camera {self._index} returned an unreadable frame: {exc}") from exc

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None


class OpenCVCameraBackend:
    """Opens V4L2/AVFoundation/DirectShow devices through OpenCV."""

    def open(self, index: int) -> OpenCVCamera:
        device_node = Path(f"/dev/video{index}")
        if device_node.exists() and not os.access(device_node, os.R_OK | os.W_OK):
            raise PermissionDenied(f"No permission to access {device_node}")

        capture = cv2.VideoCapture(index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailable(f"Failed to open camera device {index}")
        logger.debug("Opened OpenCV capture on device %d", index)
        return OpenCVCamera(capture, index)


def _to_rgb(frame: NDArray[np.uint8]) -> NDArray[np.uint8]:
    if frame.size == 0 or frame.ndim not in (2, 3):
        raise ValueError(f"Unexpected frame shape {frame.shape}")
    if frame.ndim == 2:
        return cv2.cvtColor(frame, cv2.COLOR_GRAY2RGB)
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2RGB)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
