"""Environment-based configuration for EcoScan."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from ECOSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ECOSCAN_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Model asset
    model_path: str = "models/waste_classifier.onnx"
    models_dir: str = "models"
    model_repo_id: str | None = None
    model_filename: str = "waste_classifier.onnx"
    input_size: int = Field(default=224, ge=1)

    # Runtime readiness polling (50 x 100ms)
    runtime_poll_interval: float = Field(default=0.1, gt=0)
    runtime_poll_attempts: int = Field(default=50, ge=1)

    # Camera
    camera_preferred_index: int | None = None
    camera_fallback_indices: list[int] = Field(default_factory=lambda: [0])

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Presentation events kept for GET /events
    event_history: int = Field(default=100, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
