"""Error taxonomy for dispatch and remote sends.

Send failures are raised by RequestClient implementations and classified
by the dispatcher through their ``kind``. Dispatch errors are raised to
callers of the dispatcher and session manager.
"""

from typing import ClassVar

from gridpush.contracts.enums import FailureKind

# =============================================================================
# Send failures (one per failed operation)
# =============================================================================


class SendError(Exception):
    """Base class for a failed remote write.

    The per-operation send is the unit of failure: a SendError never aborts
    a session on its own unless ``fatal`` is True.
    """

    kind: ClassVar[FailureKind] = FailureKind.OTHER
    fatal: ClassVar[bool] = False

    def __init__(self, message: str = "operation failed") -> None:
        self.message = message
        super().__init__(message)


class SendTimeoutError(SendError):
    """Remote did not confirm the write within the send deadline."""

    kind = FailureKind.TIMEOUT

    def __init__(self, message: str = "placement timeout") -> None:
        super().__init__(message)


class RateLimitedError(SendError):
    """Remote throttled the write (generic rate or limit signal)."""

    kind = FailureKind.RATE_LIMITED


class BurstLimitedError(SendError):
    """Remote rejected the write because the burst quota was exhausted."""

    kind = FailureKind.BURST_LIMITED


class InsufficientResourceError(SendError):
    """Remote budget (credits) is exhausted. Fatal to the session."""

    kind = FailureKind.INSUFFICIENT_RESOURCE
    fatal = True


class RemoteError(SendError):
    """Unexpected or malformed remote error."""

    kind = FailureKind.OTHER


SEND_ERROR_TYPES: dict[FailureKind, type[SendError]] = {
    FailureKind.TIMEOUT: SendTimeoutError,
    FailureKind.RATE_LIMITED: RateLimitedError,
    FailureKind.BURST_LIMITED: BurstLimitedError,
    FailureKind.INSUFFICIENT_RESOURCE: InsufficientResourceError,
    FailureKind.OTHER: RemoteError,
}


# =============================================================================
# Dispatch control errors
# =============================================================================


class DispatchError(Exception):
    """Base class for dispatcher and session manager errors."""


class AlreadyRunningError(DispatchError):
    """Raised when a session is started or resumed while another is running."""

    def __init__(self, session_id: str | None) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already running. Stop it first.")


class NoActiveSessionError(DispatchError):
    """Raised when run() is called without a started or restored session."""

    def __init__(self) -> None:
        super().__init__("No session to run. Start or resume a session first.")


class RemoteReadError(DispatchError):
    """Raised when authoritative remote state cannot be read for reconciliation."""


class NoResumableSessionError(DispatchError):
    """Raised when a resume is requested but no usable checkpoint exists."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"No session to resume: {reason}")
