"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core,
clients or engine. Settings models are NOT re-exported here - import them
from gridpush.core.config.

Import patterns:
    from gridpush.contracts import Operation, Session, FailureKind
    from gridpush.core.config import GridpushSettings
"""

from gridpush.contracts.checkpoint import CheckpointRecord, CheckpointSummary, ResumeCheck
from gridpush.contracts.config import DispatchConfig, RateLimitConfig
from gridpush.contracts.enums import DispatchState, FailureKind, FailurePolicy, ResumeMode, StopReason
from gridpush.contracts.errors import (
    SEND_ERROR_TYPES,
    AlreadyRunningError,
    BurstLimitedError,
    DispatchError,
    InsufficientResourceError,
    NoActiveSessionError,
    NoResumableSessionError,
    RateLimitedError,
    RemoteError,
    RemoteReadError,
    SendError,
    SendTimeoutError,
)
from gridpush.contracts.operations import Operation, Session, collapse_duplicate_keys, new_session_id
from gridpush.contracts.status import (
    DispatchStatus,
    PreflightReport,
    ProgressEvent,
    RateLimitHint,
    RunSummary,
)

__all__ = [
    "SEND_ERROR_TYPES",
    "AlreadyRunningError",
    "BurstLimitedError",
    "CheckpointRecord",
    "CheckpointSummary",
    "DispatchConfig",
    "DispatchError",
    "DispatchState",
    "DispatchStatus",
    "FailureKind",
    "FailurePolicy",
    "InsufficientResourceError",
    "NoActiveSessionError",
    "NoResumableSessionError",
    "Operation",
    "PreflightReport",
    "ProgressEvent",
    "RateLimitConfig",
    "RateLimitHint",
    "RateLimitedError",
    "RemoteError",
    "RemoteReadError",
    "ResumeCheck",
    "ResumeMode",
    "RunSummary",
    "SendError",
    "SendTimeoutError",
    "Session",
    "StopReason",
    "collapse_duplicate_keys",
    "new_session_id",
]
