"""Status codes, kinds and modes shared across subsystem boundaries."""

from enum import StrEnum


class DispatchState(StrEnum):
    """Lifecycle state of the dispatcher.

    IDLE: no active session, or the previous one fully drained.
    RUNNING: draining the pending queue.
    COOLDOWN: suspended after a classified failure, will resume draining.
    STOPPED: loop exited with work remaining (stop, fatal error, crash).
    """

    IDLE = "idle"
    RUNNING = "running"
    COOLDOWN = "cooldown"
    STOPPED = "stopped"


class FailureKind(StrEnum):
    """Classification of a failed send.

    Only INSUFFICIENT_RESOURCE is fatal to a session. Every other kind is
    retryable after the matching cooldown.
    """

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    BURST_LIMITED = "burst_limited"
    INSUFFICIENT_RESOURCE = "insufficient_resource"
    OTHER = "other"


class FailurePolicy(StrEnum):
    """What happens to an operation whose send failed non-fatally.

    DROP: remove it from the queue; a later validation pass repairs it.
    REQUEUE: push it to the tail of the queue until max_retries is reached.
    """

    DROP = "drop"
    REQUEUE = "requeue"


class ResumeMode(StrEnum):
    """How a checkpointed session is resumed.

    CONTINUE: drain only the saved pending queue.
    VALIDATE: rebuild the pending queue from authoritative remote state.
    """

    CONTINUE = "continue"
    VALIDATE = "validate"


class StopReason(StrEnum):
    """Why a dispatch loop exited."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    INSUFFICIENT_RESOURCE = "insufficient_resource"
