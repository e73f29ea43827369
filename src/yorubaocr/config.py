"""Environment-based configuration for the Yoruba OCR service."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from YORUBAOCR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="YORUBAOCR_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Image sources the client may use; the others answer "permission denied"
    allowed_sources: set[Literal["library", "camera"]] = {"library", "camera"}

    # Contract violations raise instead of degrading to a user-visible error
    debug: bool = False

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model asset
    model_name: str = "yoruba_ocr"
    model_path: str = "assets/yoruba_ocr_model.onnx"
    input_size: int = Field(default=32, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Resizer output
    jpeg_quality: int = Field(default=95, ge=1, le=100)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
