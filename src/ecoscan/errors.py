"""Error taxonomy for the classification pipeline.

Every error carries a stable ``code`` used in presentation events and a
``status_code`` used when the HTTP layer turns it into a response.
"""

from __future__ import annotations

from fastapi import status


class EcoScanError(Exception):
    """Base class for all pipeline errors. Never fatal to the process."""

    code: str = "ecoscan_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)

    @property
    def message(self) -> str:
        return str(self)


# -- Model loading ------------------------------------------------------------


class DependencyUnavailable(EcoScanError):
    """Inference runtime did not become available."""

    code = "dependency_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ModelLoadError(EcoScanError):
    """Model asset could not be loaded."""

    code = "model_load_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


# -- Camera -------------------------------------------------------------------


class PermissionDenied(EcoScanError):
    """Camera access was denied."""

    code = "permission_denied"
    status_code = status.HTTP_403_FORBIDDEN


class DeviceUnavailable(EcoScanError):
    """No usable camera device."""

    code = "device_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class NoActiveSession(EcoScanError):
    """No camera session is open."""

    code = "no_active_session"
    status_code = status.HTTP_409_CONFLICT


# -- Images -------------------------------------------------------------------


class UnsupportedImageFormat(EcoScanError):
    """Image could not be decoded."""

    code = "unsupported_image_format"
    status_code = status.HTTP_400_BAD_REQUEST


class ImageTooLarge(EcoScanError):
    """Image exceeds the configured size limits."""

    code = "image_too_large"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class NoImage(EcoScanError):
    """No image has been acquired yet."""

    code = "no_image"
    status_code = status.HTTP_409_CONFLICT


# -- Inference ----------------------------------------------------------------


class ModelNotReady(EcoScanError):
    """Model is not ready for inference."""

    code = "model_not_ready"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InferenceError(EcoScanError):
    """Forward pass failed."""

    code = "inference_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class Busy(EcoScanError):
    """A classification is already running."""

    code = "busy"
    status_code = status.HTTP_409_CONFLICT


# -- API ----------------------------------------------------------------------


class Unauthorized(EcoScanError):
    """Invalid or missing API key."""

    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED
