from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BACKPLANE_URL = "https://www.backplane.io"


class Settings(BaseSettings):
    app_name: str = Field(default="dploy")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")
    metrics_file: str = Field(default="")

    backplane_url: str = Field(default=DEFAULT_BACKPLANE_URL)
    backplane_token: str = Field(default="")
    backplane_timeout_seconds: float = Field(default=15.0)

    readiness_poll_seconds: float = Field(default=1.0)
    # 0 disables the deadline and waits until the instances show up.
    readiness_timeout_seconds: float = Field(default=0.0)
    shape_pause_seconds: float = Field(default=30.0)

    docker_command: str = Field(default="docker")
    docker_timeout_seconds: int = Field(default=60)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        allow_inf_nan=False,
    )

    @model_validator(mode="after")
    def validate_values(self) -> "Settings":
        issues: list[str] = []
        parsed = urlparse(self.backplane_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            issues.append("BACKPLANE_URL must be an absolute http(s) URL.")
        if self.backplane_timeout_seconds <= 0:
            issues.append("BACKPLANE_TIMEOUT_SECONDS must be positive.")
        if self.readiness_poll_seconds <= 0:
            issues.append("READINESS_POLL_SECONDS must be positive.")
        if self.readiness_timeout_seconds < 0:
            issues.append("READINESS_TIMEOUT_SECONDS must not be negative.")
        if self.shape_pause_seconds < 0:
            issues.append("SHAPE_PAUSE_SECONDS must not be negative.")
        if self.docker_timeout_seconds <= 0:
            issues.append("DOCKER_TIMEOUT_SECONDS must be positive.")
        if issues:
            raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
