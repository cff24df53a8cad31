"""Application configuration using Pydantic Settings."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLARAFLEET_",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Clara Fleet"
    app_version: str = "0.1.0"

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_file_path: str | None = Field(
        default=None,
        description="Path of the rotating log file; file logging is disabled when unset",
    )
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Maximum size of a log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Number of rotated log files to keep",
    )
    log_json: bool = Field(
        default=False,
        description="Emit console logs as JSON lines instead of plain text",
    )

    # Container engine
    docker_host: str | None = Field(
        default=None,
        description="Docker host URL (unix:///var/run/docker.sock, tcp://host:2375). "
        "Uses DOCKER_HOST or the default socket when unset.",
    )
    data_dir: str = Field(
        default=str(Path.home() / ".clara"),
        description="Base directory for bind-mounted service data",
    )
    image_repository: str = Field(
        default="clara17verse/claracore",
        description="Image repository for the inference engine; tags select the hardware variant",
    )
    default_deployment_mode: str = Field(
        default="docker",
        description="Deployment mode assigned when a caller does not choose one",
    )

    # Local container lifecycle
    health_poll_interval: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Seconds between health polls after a container start",
    )
    health_poll_attempts: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Maximum number of health polls after a container start",
    )
    stop_grace_period: int = Field(
        default=10,
        ge=0,
        le=300,
        description="Seconds a container gets to stop before it is killed",
    )
    restart_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Pause between stop and start during restart so ports are released",
    )
    exit_check_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Pause after container start before checking it did not exit immediately",
    )
    port_preemption_enabled: bool = Field(
        default=True,
        description="Terminate processes holding a service port before starting its container",
    )
    port_preemption_allowlist: list[str] = Field(
        default_factory=list,
        description="Process names that may be terminated when preempting a port. "
        "Empty means any process holding the port may be terminated.",
    )
    port_release_wait: float = Field(
        default=2.0,
        ge=0.0,
        le=30.0,
        description="Seconds to wait for the port to be released after terminating its holder",
    )

    # Remote deployment
    ssh_connect_timeout: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Timeout for establishing an SSH session",
    )
    deploy_timeout: float = Field(
        default=600.0,
        gt=0.0,
        le=7200.0,
        description="Overall timeout for one remote deployment, including package installation",
    )
    monitor_timeout: float = Field(
        default=15.0,
        gt=0.0,
        le=300.0,
        description="Overall timeout for one remote monitoring pass",
    )
    remote_command_timeout: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="Default timeout of a single remote command",
    )
    remote_install_timeout: float = Field(
        default=480.0,
        gt=0.0,
        le=7200.0,
        description="Timeout for remote package installation and image pulls",
    )
    docker_restart_delay: float = Field(
        default=3.0,
        ge=0.0,
        le=60.0,
        description="Seconds to wait for the remote Docker daemon after restarting it",
    )
    container_settle_delay: float = Field(
        default=5.0,
        ge=0.0,
        le=120.0,
        description="Seconds to wait after docker run before verifying the container",
    )
    gpu_prerequisite_retries: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Retries for transient GPU toolkit installation failures before CPU fallback",
    )
    gpu_prerequisite_retry_delay: float = Field(
        default=5.0,
        ge=0.0,
        le=120.0,
        description="Base delay in seconds between GPU toolkit installation retries",
    )
    remote_network_name: str = Field(
        default="clara_network",
        description="Bridge network shared by remotely deployed containers",
    )
    remote_network_subnet: str = Field(
        default="172.25.0.0/16",
        description="Subnet of the shared bridge network",
    )
    known_hosts: str | None = Field(
        default=None,
        description="known_hosts file used to verify remote hosts; host keys are not verified when unset",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the log level name."""
        level = v.upper()
        if level not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("log_file_path")
    @classmethod
    def validate_log_file_path(cls, v: str | None) -> str | None:
        """Ensure log directory exists."""
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    runtime_env_path = os.getenv("CLARAFLEET_RUNTIME_ENV_PATH", "./data/runtime.env")
    return Settings(_env_file=(".env", runtime_env_path))
