# src/gridpush/engine/session.py
"""Session manager: inspect, resume, validate and clear checkpointed sessions.

Sits beside the Dispatcher and owns everything that happens between runs.
The Dispatcher owns the queue while it drains; this module decides what
the queue should hold when a run picks up again.
"""

from __future__ import annotations

from collections import deque

import structlog

from gridpush.clients.base import RemoteStateReader
from gridpush.contracts import (
    AlreadyRunningError,
    CheckpointSummary,
    NoResumableSessionError,
    Operation,
    RemoteReadError,
    ResumeCheck,
    ResumeMode,
    RunSummary,
    Session,
)
from gridpush.core.checkpoint import CheckpointStore
from gridpush.engine.dispatcher import Dispatcher
from gridpush.engine.reconcile import PayloadComparator, find_missing

logger = structlog.get_logger(__name__)


class SessionManager:
    """Manages recovery of interrupted sessions from the checkpoint slot.

    Resume modes:
    1. CONTINUE - pick the queue up exactly where the checkpoint left it
    2. VALIDATE - read the remote grid, and queue only what is not there yet

    Usage:
        sessions = SessionManager(dispatcher, store, reader=reader)

        check = sessions.can_resume()
        if check.can_resume:
            summary = sessions.resume(ResumeMode.VALIDATE)
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        store: CheckpointStore,
        *,
        reader: RemoteStateReader | None = None,
        payload_equal: PayloadComparator | None = None,
    ) -> None:
        """Initialize with the dispatcher that will run resumed sessions.

        Args:
            dispatcher: Dispatcher sharing ``store``
            store: Checkpoint slot to resume from
            reader: Authoritative remote reader, required for validation
            payload_equal: Comparator for remote vs. intended payloads
        """
        self._dispatcher = dispatcher
        self._store = store
        self._reader = reader
        self._payload_equal = payload_equal

    def inspect(self) -> CheckpointSummary | None:
        """Summarize the resumable checkpoint, if any.

        Expired checkpoints are purged on the way.
        """
        record = self._store.load_record()
        if record is None or record.session.remaining == 0:
            return None
        return CheckpointSummary.from_record(record)

    def announce(self) -> CheckpointSummary | None:
        """Startup notice: log the resumable checkpoint, if one exists."""
        summary = self.inspect()
        if summary is not None:
            logger.info(
                "Found incomplete session",
                session_id=summary.session_id,
                completed=summary.completed,
                remaining=summary.remaining,
                last_active=summary.last_active.isoformat(),
            )
        return summary

    def can_resume(self) -> ResumeCheck:
        """Check whether resume() would pick up any work."""
        if self._dispatcher.is_running:
            return ResumeCheck(can_resume=False, reason="A session is already running")
        record = self._store.load_record()
        if record is None:
            return ResumeCheck(can_resume=False, reason="No checkpoint found (absent or expired)")
        if record.session.remaining == 0:
            return ResumeCheck(can_resume=False, reason="Checkpoint has no pending operations")
        return ResumeCheck(can_resume=True)

    def restore(self, mode: ResumeMode = ResumeMode.CONTINUE) -> Session:
        """Rehydrate the checkpointed session into the dispatcher without running it.

        Raises:
            AlreadyRunningError: If a session is running.
            NoResumableSessionError: If the slot is empty or expired.
            RemoteReadError: In VALIDATE mode, if the remote cannot be read.
        """
        if self._dispatcher.is_running:
            current = self._dispatcher.session
            raise AlreadyRunningError(current.session_id if current else None)

        record = self._store.load_record()
        if record is None:
            raise NoResumableSessionError("no checkpoint found (absent or expired)")

        session = record.session
        if mode is ResumeMode.VALIDATE:
            self._reconcile(session)

        self._dispatcher.attach(session)
        logger.info(
            "Session restored",
            session_id=session.session_id,
            mode=mode.value,
            completed=session.completed_count,
            remaining=session.remaining,
        )
        return session

    def resume(self, mode: ResumeMode = ResumeMode.CONTINUE) -> RunSummary:
        """Restore the checkpointed session and drain it.

        A checkpoint with nothing pending completes immediately without any
        sends, and the slot is purged.
        """
        self.restore(mode)
        return self._dispatcher.run()

    def validate(self, session: Session | None = None) -> list[Operation]:
        """Queue a correction pass for ``session`` without running it.

        Reads the remote grid and replaces the pending queue with the
        operations whose intended payload is not there. The session id is
        kept. Defaults to the dispatcher's session, then the checkpoint.

        Returns:
            The operations now pending.

        Raises:
            AlreadyRunningError: If a session is running.
            NoResumableSessionError: If there is no session to validate.
            RemoteReadError: If the remote cannot be read.
        """
        if self._dispatcher.is_running:
            current = self._dispatcher.session
            raise AlreadyRunningError(current.session_id if current else None)

        target = session or self._dispatcher.session or self._store.load()
        if target is None:
            raise NoResumableSessionError("no session to validate")

        missing = self._reconcile(target)
        self._dispatcher.attach(target)
        if missing:
            self._store.save(target)
        else:
            self._store.clear()
        return missing

    def clear(self) -> bool:
        """Discard the checkpoint and the dispatcher's idle session.

        Raises:
            AlreadyRunningError: If a session is running.
        """
        if self._dispatcher.is_running:
            current = self._dispatcher.session
            raise AlreadyRunningError(current.session_id if current else None)
        self._dispatcher.reset()
        cleared = self._store.clear()
        if cleared:
            logger.info("Saved progress cleared")
        return cleared

    def _reconcile(self, session: Session) -> list[Operation]:
        """Rebuild the session's queue from remote state.

        Everything that is already present remotely counts as completed, so
        queue conservation holds against the original batch.
        """
        if self._reader is None:
            raise RemoteReadError("Validation needs a remote state reader")

        missing = find_missing(session.original_operations, self._reader, payload_equal=self._payload_equal)
        session.pending_queue = deque(missing)
        session.completed_count = session.original_count - len(missing)
        session.dropped_count = 0
        session.retry_counts = {}
        logger.info(
            "Validation complete",
            session_id=session.session_id,
            already_present=session.completed_count,
            missing=len(missing),
        )
        return missing
