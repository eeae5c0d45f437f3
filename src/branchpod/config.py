"""branchpod configuration."""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EXTRA_PATH_DIRS = [
    "~/flutter/bin",
    "~/.pub-cache/bin",
    "~/.npm-global/bin",
    "~/.local/bin",
    "/usr/local/bin",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and an optional TOML file."""

    model_config = SettingsConfigDict(
        env_prefix="BRANCHPOD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 3100
    log_level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")

    # Optional bearer token; when empty the API is open (local tool)
    api_token: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]

    # Durable state
    data_dir: str = Field(default=str(Path.home() / ".branchpod"))
    registry_file: str = "servers.json"

    # Dev servers
    base_port: int = Field(default=3200, ge=1024, le=65535)
    default_server_command: str = "pnpm dev"
    shell: str = "bash"
    extra_path_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_EXTRA_PATH_DIRS))
    readiness_markers: list[str] = Field(default_factory=lambda: ["ready", "started", "localhost"])
    error_markers: list[str] = Field(default_factory=lambda: ["Error"])
    readiness_grace_seconds: float = Field(default=3.0, gt=0)

    # Consoles (tmux)
    tmux_binary: str = "tmux"
    tmux_timeout_seconds: float = 5.0
    session_prefix: str = Field(default="bp", pattern=r"^[a-zA-Z0-9]+$")
    session_component_limit: int = Field(default=40, ge=8, le=120)
    console_init_delay: float = 0.2

    # Streaming
    poll_interval_seconds: float = Field(default=0.5, gt=0)
    capture_lines: int = Field(default=2000, ge=10)
    stream_buffer_size: int = Field(default=1000, ge=10, le=10000)
    subscriber_queue_size: int = Field(default=2000, ge=10)
    sse_keepalive_seconds: float = 15.0

    # Projects: id -> repository path (JSON string accepted from env)
    projects: dict[str, str] = Field(default_factory=dict)
    projects_root: str | None = None

    # Sentry (reads from SENTRY_ env vars, not BRANCHPOD_)
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(
        default=0.2, validation_alias="SENTRY_TRACES_SAMPLE_RATE"
    )

    @field_validator("projects", mode="before")
    @classmethod
    def parse_projects(cls, v: Any) -> Any:
        """Accept the project mapping as a JSON object string."""
        if isinstance(v, str):
            try:
                return json.loads(v) if v.strip() else {}
            except json.JSONDecodeError as e:
                raise ValueError(f"projects must be a JSON object: {e}") from e
        return v

    @property
    def registry_path(self) -> Path:
        """Absolute path of the server registry file."""
        path = Path(self.registry_file).expanduser()
        if path.is_absolute():
            return path
        return Path(self.data_dir).expanduser() / path

    def expanded_path_dirs(self) -> list[str]:
        """Extra PATH entries with ``~`` expanded."""
        return [str(Path(p).expanduser()) for p in self.extra_path_dirs]

    def is_development(self) -> bool:
        return self.environment == "development"


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "branchpod" / "config.toml"


def load_settings(config_file: str | Path | None = None) -> Settings:
    """Load settings from a TOML file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (BRANCHPOD_*)
    2. Provided config file
    3. Default config file (~/.config/branchpod/config.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded settings
    """
    import os
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = dict(data.get("branchpod", {}))

            # [projects] table maps project id -> repository path
            if "projects" in data:
                file_config["projects"] = dict(data["projects"])

    # Init kwargs outrank the environment in pydantic-settings, so drop file
    # values that the environment already sets.
    env_keys = {key.lower() for key in os.environ}
    file_config = {
        key: value
        for key, value in file_config.items()
        if f"branchpod_{key}".lower() not in env_keys
    }

    return Settings(**file_config)
