"""
Application configuration with environment-based settings.

Configuration is centralized here to allow easy swapping between
development, staging, and production environments. Every setting can be
overridden with a ``SMARTPLANT_`` prefixed environment variable or a
``.env`` file.
"""

import math
import sys
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_UNSURE_THRESHOLD = 0.6


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    app_name: str = "SmartPlant Observation API"
    app_version: str = "0.1.0"
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 3000

    # Database
    database_url: str = "sqlite:///./smartplant.db"
    database_echo: bool = False

    # Classifier worker subprocess
    python_path: str = sys.executable
    worker_module: str = "smartplant.ml.worker"
    worker_timeout_seconds: float = 30.0
    classifier_model_id: str = "google/vit-base-patch16-224"
    default_top_k: int = 5

    # Observations below this confidence are flagged for review
    unsure_threshold: float = DEFAULT_UNSURE_THRESHOLD

    # Uploaded photos and the per-species archive
    upload_dir: str = "./uploads"
    public_upload_prefix: str = "/uploads"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "SMARTPLANT_"

    @field_validator("unsure_threshold", mode="before")
    @classmethod
    def clamp_threshold(cls, v) -> float:
        """Clamp the review threshold to [0, 1]; unusable values fall back to the default."""
        try:
            value = float(v)
        except (TypeError, ValueError):
            return DEFAULT_UNSURE_THRESHOLD
        if not math.isfinite(value):
            return DEFAULT_UNSURE_THRESHOLD
        return max(0.0, min(1.0, value))

    @field_validator("default_top_k")
    @classmethod
    def validate_top_k(cls, v: int) -> int:
        if v < 1:
            raise ValueError("default_top_k must be at least 1")
        return v

    def worker_command(self) -> list[str]:
        """Command line used to spawn the classifier worker."""
        return [self.python_path, "-m", self.worker_module]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

