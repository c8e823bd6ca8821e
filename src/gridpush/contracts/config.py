"""Runtime configuration dataclasses.

Frozen, slotted counterparts of the pydantic settings models. Engine and
limiter code depends on these rather than on the settings models, so they
can be built directly in tests without YAML.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from gridpush.contracts.enums import FailurePolicy

# Settings classes are imported lazily inside from_settings() so contracts
# stays a leaf package with no dependency on core.
if TYPE_CHECKING:
    from gridpush.core.config import DispatchSettings, RateLimitSettings


@dataclass(frozen=True, slots=True)
class RateLimitConfig:
    """Dual-window admission policy.

    Defaults are deliberately conservative: half the burst quota the remote
    declares (30 per 10 s) plus a two second safety margin.
    """

    min_spacing_ms: int = 400
    burst_quota: int = 15
    burst_window_ms: int = 10_000
    burst_safety_margin_ms: int = 2_000
    jitter_min_ms: int = 50
    jitter_max_ms: int = 150
    report_window_ms: int = 60_000

    def __post_init__(self) -> None:
        if self.min_spacing_ms < 0:
            raise ValueError(f"min_spacing_ms must be >= 0, got {self.min_spacing_ms}")
        if self.burst_quota <= 0:
            raise ValueError(f"burst_quota must be positive, got {self.burst_quota}")
        if self.burst_window_ms <= 0:
            raise ValueError(f"burst_window_ms must be positive, got {self.burst_window_ms}")
        if self.burst_safety_margin_ms < 0:
            raise ValueError(f"burst_safety_margin_ms must be >= 0, got {self.burst_safety_margin_ms}")
        if not 0 <= self.jitter_min_ms <= self.jitter_max_ms:
            raise ValueError(f"jitter range must satisfy 0 <= min <= max, got {self.jitter_min_ms}..{self.jitter_max_ms}")
        if self.report_window_ms <= 0:
            raise ValueError(f"report_window_ms must be positive, got {self.report_window_ms}")

    @classmethod
    def from_settings(cls, settings: "RateLimitSettings") -> "RateLimitConfig":
        return cls(
            min_spacing_ms=settings.min_spacing_ms,
            burst_quota=settings.burst_quota,
            burst_window_ms=settings.burst_window_ms,
            burst_safety_margin_ms=settings.burst_safety_margin_ms,
            jitter_min_ms=settings.jitter_min_ms,
            jitter_max_ms=settings.jitter_max_ms,
            report_window_ms=settings.report_window_ms,
        )

    @classmethod
    def no_jitter(cls, **overrides: int) -> "RateLimitConfig":
        """Factory for deterministic timing (tests, simulations)."""
        return cls(jitter_min_ms=0, jitter_max_ms=0, **overrides)


@dataclass(frozen=True, slots=True)
class DispatchConfig:
    """Checkpoint cadence, cooldowns and failure policy of the dispatch loop."""

    checkpoint_interval: int = 10
    progress_interval: int = 50
    burst_cooldown_seconds: float = 15.0
    rate_limit_cooldown_seconds: float = 10.0
    error_cooldown_seconds: float = 1.0
    failure_policy: FailurePolicy = FailurePolicy.DROP
    max_retries: int = 3
    deduplicate_keys: bool = False

    def __post_init__(self) -> None:
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be >= 1")
        if self.progress_interval < 1:
            raise ValueError("progress_interval must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        for name in ("burst_cooldown_seconds", "rate_limit_cooldown_seconds", "error_cooldown_seconds"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_settings(cls, settings: "DispatchSettings") -> "DispatchConfig":
        return cls(
            checkpoint_interval=settings.checkpoint_interval,
            progress_interval=settings.progress_interval,
            burst_cooldown_seconds=settings.burst_cooldown_seconds,
            rate_limit_cooldown_seconds=settings.rate_limit_cooldown_seconds,
            error_cooldown_seconds=settings.error_cooldown_seconds,
            failure_policy=settings.failure_policy,
            max_retries=settings.max_retries,
            deduplicate_keys=settings.deduplicate_keys,
        )
