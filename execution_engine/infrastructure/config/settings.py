"""
Engine configuration.

Loads configuration from environment variables (prefix EXECUTOR_) and an
optional .env file using pydantic-settings.
"""

from functools import lru_cache
from typing import Any, Dict, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Execution engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXECUTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============== Isolation ==============
    isolation_backend: Literal["docker", "bwrap", "subprocess"] = Field(
        default="docker", description="Sandbox mechanism"
    )
    docker_url: str = Field(default="unix:///var/run/docker.sock")
    workspace_root: Optional[str] = Field(
        default=None, description="Parent directory of local sandbox workspaces (bwrap/subprocess)"
    )
    languages_file: Optional[str] = Field(
        default=None, description="YAML file adding or overriding language descriptors"
    )

    # ============== Timeouts ==============
    default_timeout_seconds: float = Field(default=10, gt=0, le=3600)
    compile_timeout_seconds: float = Field(default=30, gt=0, le=3600)
    install_timeout_seconds: float = Field(default=120, gt=0, le=3600)
    grading_timeout_seconds: float = Field(default=15, gt=0, le=3600)
    kill_grace_seconds: float = Field(default=2, ge=0, le=60)

    # ============== Resource limits ==============
    default_memory_mb: int = Field(default=256, ge=16)
    default_cpu_share: float = Field(default=0.5, gt=0)
    default_max_processes: int = Field(default=64, ge=1)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    limit_profiles: Dict[str, Dict[str, Any]] = Field(
        default_factory=lambda: {
            "playground": {"timeout_seconds": 5, "max_memory_mb": 128, "max_processes": 32},
        },
        description="Named ResourceLimit overrides selected by ExecutionRequest.profile",
    )

    # ============== Sessions ==============
    idle_timeout_seconds: float = Field(
        default=300, ge=-1, description="Idle grace window, -1 disables idle reclaiming"
    )
    reaper_interval_seconds: float = Field(default=30, gt=0)

    # ============== Grading ==============
    grading_concurrency: int = Field(default=1, ge=1, le=32)

    # ============== Logging ==============
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = {"json", "text"}
        if v not in allowed:
            raise ValueError(f"log_format must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """
    Return the settings singleton.

    lru_cache makes sure the environment is only read once.
    """
    return Settings()
