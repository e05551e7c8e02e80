"""Image acquisition: file uploads and camera captures as one image type."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import uuid4

import numpy as np

from ecoscan.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ecoscan.capture.session import CaptureSession, CaptureSessionManager
    from ecoscan.config import Settings

logger = logging.getLogger(__name__)


class ImageSourceKind(StrEnum):
    FILE = "file"
    CAMERA = "camera"


@dataclass(frozen=True, eq=False)
class ImageHandle:
    """Decoded pixel data for one acquired image.

    The pixel buffer is a private read-only copy; a new acquisition creates
    a new handle rather than mutating this one.
    """

    pixels: NDArray[np.uint8]
    source: ImageSourceKind
    id: str = field(default_factory=lambda: uuid4().hex)

    @classmethod
    def from_array(cls, pixels: NDArray[np.uint8], source: ImageSourceKind) -> ImageHandle:
        frozen = np.array(pixels, dtype=np.uint8, copy=True)
        if frozen.ndim not in (2, 3) or frozen.size == 0:
            raise ValueError(f"Invalid pixel buffer shape {frozen.shape}")
        frozen.setflags(write=False)
        return cls(pixels=frozen, source=source)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class ImageSource:
    """Normalizes file selection and camera capture into ImageHandles."""

    def __init__(self, settings: Settings, capture: CaptureSessionManager) -> None:
        self._settings = settings
        self._capture = capture

    async def from_file(self, data: bytes) -> ImageHandle:
        """Decode an uploaded file.

        Raises:
            UnsupportedImageFormat: If the bytes are not a supported image.
            ImageTooLarge: If the image exceeds the configured limits.
        """
        pixels = await asyncio.to_thread(
            decode_image,
            data,
            max_file_size=self._settings.max_file_size,
            max_image_pixels=self._settings.max_image_pixels,
        )
        handle = ImageHandle.from_array(pixels, ImageSourceKind.FILE)
        logger.info("Decoded uploaded image %s (%dx%d)", handle.id, handle.width, handle.height)
        return handle

    async def from_capture(self, session: CaptureSession) -> ImageHandle:
        """Freeze the current frame of ``session``; the session is closed afterwards."""
        return await self._capture.capture_frame(session)
