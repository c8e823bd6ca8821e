# src/gridpush/core/config.py
"""
Configuration schema and loading for gridpush.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from gridpush.contracts.enums import FailurePolicy


class RateLimitSettings(BaseModel):
    """Admission control for remote writes.

    Defaults are half of what the remote declares (30 per 10 s) with a
    two second safety margin on top of the burst window.

    Example YAML:
        rate_limit:
          min_spacing_ms: 400
          burst_quota: 15
          burst_window_ms: 10000
          burst_safety_margin_ms: 2000
    """

    model_config = {"frozen": True}

    min_spacing_ms: int = Field(default=400, ge=0, description="Minimum gap between consecutive sends")
    burst_quota: int = Field(default=15, gt=0, description="Maximum sends in one burst window")
    burst_window_ms: int = Field(default=10_000, gt=0, description="Length of the rolling burst window")
    burst_safety_margin_ms: int = Field(default=2_000, ge=0, description="Extra wait when the burst window is exhausted")
    jitter_min_ms: int = Field(default=50, ge=0, description="Lower bound of the random delay added to every send")
    jitter_max_ms: int = Field(default=150, ge=0, description="Upper bound of the random delay added to every send")
    report_window_ms: int = Field(default=60_000, gt=0, description="Window for the reported send rate")

    @model_validator(mode="after")
    def validate_jitter_range(self) -> "RateLimitSettings":
        if self.jitter_max_ms < self.jitter_min_ms:
            raise ValueError("jitter_max_ms must be >= jitter_min_ms")
        return self


class DispatchSettings(BaseModel):
    """Dispatch loop behavior.

    Failure policy trade-offs:
    - drop: Failed operations leave the queue. A validation pass repairs them.
    - requeue: Failed operations go to the tail of the queue until max_retries.
    """

    model_config = {"frozen": True}

    checkpoint_interval: int = Field(default=10, gt=0, description="Checkpoint every N confirmed operations")
    progress_interval: int = Field(default=50, gt=0, description="Report progress every N confirmed operations")
    burst_cooldown_seconds: float = Field(default=15.0, ge=0)
    rate_limit_cooldown_seconds: float = Field(default=10.0, ge=0)
    error_cooldown_seconds: float = Field(default=1.0, ge=0)
    failure_policy: FailurePolicy = FailurePolicy.DROP
    max_retries: int = Field(default=3, ge=0, description="Requeue attempts per operation (requeue policy only)")
    deduplicate_keys: bool = Field(default=False, description="Collapse repeated keys, last one wins")


class CheckpointSettings(BaseModel):
    """Durable checkpoint storage."""

    model_config = {"frozen": True}

    url: str = Field(default="sqlite:///gridpush_checkpoints.db", description="SQLAlchemy database URL")
    slot: str = Field(default="pixel_embedder_progress", min_length=1, description="Well-known checkpoint slot")
    expiry_hours: float = Field(default=24.0, gt=0, description="Checkpoints older than this are discarded")


class RemoteSettings(BaseModel):
    """Remote grid service.

    Example YAML:
        remote:
          base_url: https://grid.example.com
          placement_paths: ["/api/pixels", "/api/place_pixel"]
          api_token: ${GRIDPUSH_TOKEN}
    """

    model_config = {"frozen": True}

    base_url: str = Field(default="http://localhost:3000", description="Base URL of the grid service")
    placement_paths: tuple[str, ...] = Field(
        default=("/api/pixels",),
        min_length=1,
        description="Write endpoints raced against each other, primary first",
    )
    region_path: str = "/api/region"
    credits_path: str = "/api/credits"
    rate_limit_status_path: str = "/api/rate-limit-status"
    send_timeout_seconds: float = Field(default=8.0, gt=0, description="Deadline for one write to be confirmed")
    fallback_delay_seconds: float = Field(default=0.2, ge=0, description="Delay before racing the next channel")
    region_size: int = Field(default=100, gt=0, description="Tile edge used to batch reconciliation reads")
    read_max_attempts: int = Field(default=3, ge=1, description="Attempts for each reconciliation read")
    canvas_width: int = Field(default=1000, gt=0)
    canvas_height: int = Field(default=1000, gt=0)
    api_token: SecretStr | None = None

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")


class LoggingSettings(BaseModel):
    """Logging output."""

    model_config = {"frozen": True}

    level: str = "INFO"
    json_output: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        normalized = v.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return normalized


class GridpushSettings(BaseModel):
    """Top-level gridpush configuration.

    Every section has defaults, so an empty settings file is valid.
    """

    model_config = {"frozen": True}

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)  # None if no default specified
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (validation reports it)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Lower-case mapping keys at every depth (Dynaconf upper-cases env keys)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path | None = None) -> GridpushSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (GRIDPUSH_*) - highest priority
    2. Config file (gridpush.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: GRIDPUSH_REMOTE__BASE_URL for nested keys.

    Args:
        config_path: Path to YAML configuration file, or None for
            environment variables and defaults only.

    Returns:
        Validated GridpushSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="GRIDPUSH",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,  # No [default]/[production] sections
        load_dotenv=False,  # The CLI loads .env itself
        merge_enabled=True,  # Deep merge nested dicts
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}

    raw_config = _expand_env_vars(raw_config)

    return GridpushSettings(**raw_config)
