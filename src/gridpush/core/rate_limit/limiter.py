"""Dual-window admission control built on pyrate-limiter buckets."""

from __future__ import annotations

import math
import random

import structlog
from pyrate_limiter import InMemoryBucket, Rate, RateItem  # type: ignore[attr-defined]

from gridpush.contracts.config import RateLimitConfig
from gridpush.core.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

# The reporting bucket only measures; its limit is never meant to bind.
_UNBOUNDED = 2**31 - 1

# Floor for a burst wait so a zero safety margin cannot spin on the boundary
# entry pyrate-limiter still counts (it evicts strictly older entries).
_MIN_BURST_WAIT_SECONDS = 0.001


def _to_ms(seconds: float) -> int:
    return int(seconds * 1000)


class RateLimiter:
    """Admission gate enforcing minimum spacing plus a sliding burst quota.

    Two rolling logs are kept as pyrate-limiter in-memory buckets: the burst
    log decides admission, the reporting log counts sends in the last minute.
    Every admitted send is recorded in both, whether or not the remote later
    confirms it, since a rejected write still counts against the remote quota.

    Guarantees, for any sequence of admitted sends:
    - no window of ``burst_window_ms`` holds more than ``burst_quota`` sends
    - consecutive sends are at least ``min_spacing_ms`` apart
    - no single burst wait exceeds ``burst_window_ms + burst_safety_margin_ms``

    Example:
        limiter = RateLimiter(RateLimitConfig())

        for op in operations:
            limiter.admit()  # blocks until it is safe to send
            client.send(op)
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        name: str = "dispatch",
        clock: Clock = DEFAULT_CLOCK,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize rate limiter.

        Args:
            config: Admission policy (defaults to the conservative policy)
            name: Bucket item name, shows up in debug logs only
            clock: Time source for waits and timestamps
            rng: Random source for the per-send jitter
        """
        self.config = config or RateLimitConfig()
        self.name = name
        self._clock = clock
        self._rng = rng or random.Random()
        self._burst = InMemoryBucket([Rate(self.config.burst_quota, self.config.burst_window_ms)])
        self._report = InMemoryBucket([Rate(_UNBOUNDED, self.config.report_window_ms)])
        self._last_send: float | None = None

    @property
    def last_send_time(self) -> float | None:
        """Monotonic time of the last admitted send."""
        return self._last_send

    def admit(self) -> float:
        """Wait until one more send is safe, then record it.

        Returns:
            Seconds spent waiting (burst wait, spacing and jitter).
        """
        started = self._clock.monotonic()
        while True:
            self._wait_for_burst_capacity()
            self._wait_for_spacing()
            jitter = self._jitter()
            if jitter > 0:
                self._clock.sleep(jitter)

            now = self._clock.monotonic()
            self._evict(now)
            # The burst bucket re-checks the window itself; a refusal only
            # happens on the exact window boundary and means wait again.
            if self._burst.put(RateItem(self.name, _to_ms(now))):
                break

        self._report.put(RateItem(self.name, _to_ms(now)))
        self._last_send = now
        return now - started

    def reset_burst(self) -> None:
        """Forget the burst log.

        Called when the remote reports a burst limit: the local log evidently
        disagrees with the remote's, so the cooldown that follows replaces it.
        """
        self._burst.flush()

    def reset(self) -> None:
        """Forget all send history (new session)."""
        self._burst.flush()
        self._report.flush()
        self._last_send = None

    def burst_usage(self) -> int:
        """Sends counted in the current burst window. Side-effect free."""
        cutoff = _to_ms(self._clock.monotonic()) - self.config.burst_window_ms
        return sum(1 for item in self._burst.items if item.timestamp >= cutoff)

    def sends_last_window(self) -> int:
        """Sends in the reporting window (one minute by default). Side-effect free."""
        cutoff = _to_ms(self._clock.monotonic()) - self.config.report_window_ms
        return sum(1 for item in self._report.items if item.timestamp >= cutoff)

    def _evict(self, now: float) -> None:
        now_ms = _to_ms(now)
        self._burst.leak(now_ms)
        self._report.leak(now_ms)

    def _wait_for_burst_capacity(self) -> None:
        now = self._clock.monotonic()
        self._evict(now)
        while self._burst.count() >= self.config.burst_quota:
            oldest_ms = self._burst.items[0].timestamp
            wait_ms = self.config.burst_window_ms - (_to_ms(now) - oldest_ms) + self.config.burst_safety_margin_ms
            wait = max(wait_ms / 1000, _MIN_BURST_WAIT_SECONDS)
            logger.info(
                "Burst protection wait",
                wait_seconds=round(wait, 3),
                burst_usage=self._burst.count(),
                burst_quota=self.config.burst_quota,
            )
            self._clock.sleep(wait)
            now = self._clock.monotonic()
            self._evict(now)

    def _wait_for_spacing(self) -> None:
        if self._last_send is None:
            return
        elapsed = self._clock.monotonic() - self._last_send
        spacing = self.config.min_spacing_ms / 1000
        if elapsed < spacing:
            self._clock.sleep(spacing - elapsed)

    def _jitter(self) -> float:
        low, high = self.config.jitter_min_ms, self.config.jitter_max_ms
        if high == 0:
            return 0.0
        return self._rng.uniform(low, high) / 1000


def estimate_duration(operation_count: int, config: RateLimitConfig) -> float:
    """Lower bound, in seconds, on the time to admit ``operation_count`` sends.

    Any ``burst_quota + 1`` consecutive sends span at least one burst window,
    and spacing applies between every pair of sends. The safety margin only
    lengthens individual waits, so it is not part of the bound.
    """
    if operation_count <= 1:
        return 0.0
    spacing_bound = (operation_count - 1) * config.min_spacing_ms
    full_windows = math.ceil(operation_count / config.burst_quota) - 1
    burst_bound = full_windows * config.burst_window_ms
    return max(spacing_bound, burst_bound) / 1000
