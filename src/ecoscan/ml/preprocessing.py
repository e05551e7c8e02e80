"""Image preprocessing pipeline.

Decodes uploaded bytes into RGB uint8 arrays (format detection, size limits,
EXIF orientation, colour conversion) and turns an image into the float32
NHWC tensor the classifier expects.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from ecoscan.errors import ImageTooLarge, InferenceError, UnsupportedImageFormat

if TYPE_CHECKING:
    from types import TracebackType

    from numpy.typing import NDArray

    from ecoscan.image_source import ImageHandle

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS: tuple[str, ...] = ("JPEG", "PNG", "BMP", "GIF", "WEBP", "TIFF")

PIXEL_SCALE: float = 255.0


def decode_image(data: bytes, *, max_file_size: int, max_image_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        data: Raw file bytes (any supported format).
        max_file_size: Upper bound on ``len(data)``.
        max_image_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        UnsupportedImageFormat: If the bytes are empty or not a supported image.
        ImageTooLarge: If the file or the decoded image exceeds the limits.
    """
    if not data:
        raise UnsupportedImageFormat("Empty image file")
    if len(data) > max_file_size:
        raise ImageTooLarge(f"Image file is {len(data)} bytes, limit is {max_file_size}")

    try:
        with Image.open(io.BytesIO(data), formats=SUPPORTED_FORMATS) as img:
            pixels = img.width * img.height
            if pixels > max_image_pixels:
                raise ImageTooLarge(f"Image has {pixels} pixels, limit is {max_image_pixels}")
            oriented = ImageOps.exif_transpose(img)
            rgb = oriented.convert("RGB")
            return np.array(rgb, dtype=np.uint8)
    except Image.DecompressionBombError as exc:
        raise ImageTooLarge(str(exc)) from exc
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        logger.debug("Rejected undecodable image (%d bytes): %s", len(data), exc)
        raise UnsupportedImageFormat("File is not a supported image (JPEG, PNG, BMP, GIF, WEBP, TIFF)") from exc


class TensorScope:
    """Holds the intermediate arrays of one inference run.

    All tracked arrays are dropped when the scope exits, whether the run
    succeeded or raised, so repeated classifications do not accumulate
    buffers.
    """

    def __init__(self) -> None:
        self._arrays: list[np.ndarray] = []
        self.released = False

    def track(self, array: np.ndarray) -> np.ndarray:
        if self.released:
            raise RuntimeError("TensorScope already released")
        self._arrays.append(array)
        return array

    def __len__(self) -> int:
        return len(self._arrays)

    def release(self) -> None:
        self._arrays.clear()
        self.released = True

    def __enter__(self) -> TensorScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


def to_input_tensor(image: ImageHandle, size: int, scope: TensorScope) -> NDArray[np.float32]:
    """Prepare an image for the classifier.

    Steps: 3-channel check, bilinear resize to ``size`` x ``size``, leading
    batch dimension, float32 cast and scaling into [0.0, 1.0].

    Returns:
        Tensor of shape (1, size, size, 3).

    Raises:
        InferenceError: If the pixel buffer is not HxWx3.
    """
    pixels = scope.track(np.ascontiguousarray(image.pixels, dtype=np.uint8))
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise InferenceError(f"Expected a 3-channel image, got shape {pixels.shape}")

    resized = scope.track(
        np.asarray(Image.fromarray(pixels).resize((size, size), Image.Resampling.BILINEAR), dtype=np.uint8)
    )
    batched = scope.track(resized[np.newaxis, ...])
    tensor = scope.track(batched.astype(np.float32) / np.float32(PIXEL_SCALE))
    return tensor
