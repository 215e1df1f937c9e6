from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


class Settings(BaseSettings):
    """Application settings and configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SKYCLF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Application settings
    app_name: str = "SkyClf"
    app_version: str = "1.0.0"
    app_description: str = "Sky state classifier: training orchestration and model serving"
    debug: bool = False

    # Server configuration
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging
    log_level: str = "info"
    log_json: bool = False

    # Data layout
    data_dir: Path = Path("./data")
    models_dir: Optional[Path] = None
    images_dir: Optional[Path] = None

    # Model discovery
    model_task: str = "skystate"
    version_prefix: str = "v"
    artifact_name: str = "model.onnx"

    # Trainer container
    trainer_container: str = "skyclf-trainer"
    trainer_enabled: bool = True
    docker_timeout: float = Field(30.0, gt=0)
    stop_grace_seconds: int = Field(10, ge=0)
    status_log_tail: int = Field(100, gt=0)
    final_log_tail: int = Field(500, gt=0)

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        return value

    @model_validator(mode="after")
    def _derive_paths(self) -> "Settings":
        # Derived paths follow data_dir unless set explicitly
        if self.models_dir is None:
            self.models_dir = self.data_dir / "models"
        if self.images_dir is None:
            self.images_dir = self.data_dir / "images"
        return self


# Create settings instance
settings = Settings()
