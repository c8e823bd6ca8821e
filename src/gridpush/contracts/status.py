"""Status, progress and summary contracts reported to consumers."""

from dataclasses import dataclass

from gridpush.contracts.enums import DispatchState, StopReason


@dataclass(frozen=True)
class DispatchStatus:
    """Read-only snapshot of the dispatcher.

    Attributes:
        running: Whether the dispatch loop is currently draining.
        queue_depth: Operations still pending.
        original_count: Size of the submitted batch.
        completed: Confirmed operations.
        errors: Failed sends, fatal or not.
        current_burst_usage: Sends counted in the current burst window.
        session_id: Current (or last) session id, if any.
        has_resumable_checkpoint: Whether a non-expired, non-empty checkpoint exists.
        state: Dispatcher lifecycle state.
        current_rate: Sends in the last reporting window (one minute).
        burst_quota: Configured burst quota.
        min_spacing_ms: Configured minimum spacing between sends.
        tier: Last admission-policy tier reported by the remote, if any.
    """

    running: bool
    queue_depth: int
    original_count: int
    completed: int
    errors: int
    current_burst_usage: int
    session_id: str | None
    has_resumable_checkpoint: bool
    state: DispatchState
    current_rate: int
    burst_quota: int
    min_spacing_ms: int
    tier: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    """Progress emitted every N confirmed operations.

    Attributes:
        session_id: Session being drained.
        completed: Confirmed operations so far.
        remaining: Operations still pending.
        per_minute: Confirmation rate since the loop started.
        elapsed_seconds: Time since the loop started.
        balance: Advisory remaining budget, if the balance probe reported one.
    """

    session_id: str
    completed: int
    remaining: int
    per_minute: float
    elapsed_seconds: float
    balance: int | None = None


@dataclass(frozen=True)
class RunSummary:
    """Outcome of one dispatch loop."""

    session_id: str
    stop_reason: StopReason
    completed: int
    errors: int
    dropped: int
    remaining: int
    elapsed_seconds: float
    balance: int | None = None

    @property
    def resumable(self) -> bool:
        """A run that ends with work left keeps its checkpoint."""
        return self.remaining > 0


@dataclass(frozen=True)
class PreflightReport:
    """Advisory comparison of remaining budget against batch size.

    A deficit is surfaced to the caller, never enforced.
    """

    required: int
    balance: int | None

    @property
    def deficit(self) -> int:
        if self.balance is None:
            return 0
        return max(0, self.required - self.balance)

    @property
    def sufficient(self) -> bool | None:
        """None when the balance is unknown."""
        if self.balance is None:
            return None
        return self.deficit == 0


@dataclass(frozen=True)
class RateLimitHint:
    """Admission-policy hint reported by the remote status channel.

    Informational only: the local limiter is never relaxed on a hint.
    """

    tier: str
    burst_quota: int | None = None
    per_minute: int | None = None
