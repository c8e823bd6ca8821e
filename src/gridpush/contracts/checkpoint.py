"""Checkpoint and resume contracts.

These types describe what the checkpoint store holds and what the
session manager reports about it. They are not the storage schema.
"""

from dataclasses import dataclass
from datetime import datetime

from gridpush.contracts.operations import Session


@dataclass(frozen=True)
class CheckpointRecord:
    """Durable snapshot of a session plus the wall-clock time it was taken."""

    session: Session
    timestamp: datetime


@dataclass(frozen=True)
class CheckpointSummary:
    """Read-only view of a resumable checkpoint.

    Used to tell the user what a resume would pick up without rehydrating
    the dispatcher.
    """

    session_id: str
    completed: int
    remaining: int
    original_count: int
    errors: int
    last_active: datetime

    @classmethod
    def from_record(cls, record: CheckpointRecord) -> "CheckpointSummary":
        session = record.session
        return cls(
            session_id=session.session_id,
            completed=session.completed_count,
            remaining=session.remaining,
            original_count=session.original_count,
            errors=session.error_count,
            last_active=record.timestamp,
        )


@dataclass(frozen=True)
class ResumeCheck:
    """Result of checking whether a checkpoint can be resumed."""

    can_resume: bool
    reason: str | None = None

    def __post_init__(self) -> None:
        if self.can_resume and self.reason is not None:
            raise ValueError("can_resume=True should not have a reason")
        if not self.can_resume and self.reason is None:
            raise ValueError("can_resume=False must have a reason explaining why")
