# src/gridpush/engine/dispatcher.py
"""Dispatcher: drains a session's queue through the limiter and the client.

One suspendable sequential loop per session. Only one operation is ever in
flight: the remote has no multi-key atomicity and the limiter's accounting
assumes strictly serialized sends.

Loop, per operation:
    admit (RateLimiter) -> send (RequestClient) -> classify -> checkpoint

Failures never abort the session except InsufficientResourceError. Every
failure is counted and checkpointed immediately, so a later validation pass
can recover operations the failure policy dropped.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence

import structlog

from gridpush.clients.base import BalanceProbe, RequestClient, StatusProbe
from gridpush.contracts import (
    AlreadyRunningError,
    DispatchConfig,
    DispatchState,
    DispatchStatus,
    FailureKind,
    FailurePolicy,
    NoActiveSessionError,
    Operation,
    PreflightReport,
    ProgressEvent,
    RateLimitHint,
    RunSummary,
    SendError,
    Session,
    StopReason,
    collapse_duplicate_keys,
)
from gridpush.core.checkpoint import CheckpointStore
from gridpush.core.clock import DEFAULT_CLOCK, Clock
from gridpush.core.logging import session_context
from gridpush.core.rate_limit import RateLimiter, estimate_duration

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class Dispatcher:
    """Owns the pending queue of one session and drives it to completion.

    State machine:
        IDLE -> RUNNING -> (COOLDOWN -> RUNNING)* -> IDLE     queue drained
                                                  -> STOPPED  work remaining

    stop() is cooperative: it clears ``session.active`` and the loop exits at
    the top of its next iteration. An in-flight send is never interrupted.

    Example:
        dispatcher = Dispatcher(client, CheckpointStore.from_url(url))

        report = dispatcher.preflight(operations)  # advisory only
        summary = dispatcher.dispatch(operations, resource_id="main-canvas")
        if summary.resumable:
            ...  # checkpoint retained, see SessionManager.resume()
    """

    def __init__(
        self,
        client: RequestClient,
        store: CheckpointStore,
        *,
        limiter: RateLimiter | None = None,
        config: DispatchConfig | None = None,
        clock: Clock = DEFAULT_CLOCK,
        balance_probe: BalanceProbe | None = None,
        status_probe: StatusProbe | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Initialize with injected collaborators.

        Args:
            client: Performs one remote write per call
            store: Durable checkpoint slot
            limiter: Admission gate (default: conservative policy on ``clock``)
            config: Checkpoint cadence, cooldowns and failure policy
            clock: Time source for cooldowns and elapsed time
            balance_probe: Optional advisory budget reader
            status_probe: Optional advisory admission-policy reader
            on_progress: Optional callback for progress events
        """
        self._client = client
        self._store = store
        self._clock = clock
        self._limiter = limiter or RateLimiter(clock=clock)
        self.config = config or DispatchConfig()
        self._balance_probe = balance_probe
        self._status_probe = status_probe
        self._on_progress = on_progress

        # Reentrant: stop() may run from a signal handler on the loop's own thread.
        self._lock = threading.RLock()
        self._state = DispatchState.IDLE
        self._session: Session | None = None
        self._looping = False
        # Set by stop(), consumed by the next run().
        self._stop_requested = False
        self._hint: RateLimitHint | None = None
        self._announced_tiers: set[str] = set()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def session(self) -> Session | None:
        """Current session, or the last one after it finished."""
        return self._session

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._looping or (self._session is not None and self._session.active)

    def get_status(self) -> DispatchStatus:
        """Snapshot for consumers. Side-effect free: never purges checkpoints."""
        with self._lock:
            session = self._session
            state = self._state
            running = self._looping
        return DispatchStatus(
            running=running,
            queue_depth=session.remaining if session else 0,
            original_count=session.original_count if session else 0,
            completed=session.completed_count if session else 0,
            errors=session.error_count if session else 0,
            current_burst_usage=self._limiter.burst_usage(),
            session_id=session.session_id if session else None,
            has_resumable_checkpoint=self._store.has_resumable(),
            state=state,
            current_rate=self._limiter.sends_last_window(),
            burst_quota=self._limiter.config.burst_quota,
            min_spacing_ms=self._limiter.config.min_spacing_ms,
            tier=self._hint.tier if self._hint else None,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def preflight(self, operations: Sequence[Operation]) -> PreflightReport:
        """Compare the advisory balance with the batch size.

        Never blocks a caller: a deficit is only reported and logged.
        """
        balance = self._balance_probe.fetch_balance() if self._balance_probe is not None else None
        report = PreflightReport(required=len(operations), balance=balance)
        if report.sufficient is False:
            logger.warning(
                "Insufficient balance for batch",
                balance=balance,
                required=report.required,
                deficit=report.deficit,
            )
        elif report.sufficient:
            logger.info("Sufficient balance", balance=balance, required=report.required)
        return report

    def start_session(self, operations: Iterable[Operation], resource_id: str | None = None) -> str:
        """Create, persist and activate a new session.

        Args:
            operations: Ordered batch; later operations for a key supersede earlier ones
            resource_id: Identity of the target grid

        Returns:
            The new session id.

        Raises:
            AlreadyRunningError: If a session is active.
            ValueError: If the batch is empty.
        """
        ops = list(operations)
        if not ops:
            raise ValueError("No operations to dispatch")
        if self.config.deduplicate_keys:
            collapsed = collapse_duplicate_keys(ops)
            if len(collapsed) != len(ops):
                logger.info("Collapsed duplicate keys", submitted=len(ops), kept=len(collapsed))
            ops = collapsed

        with self._lock:
            self._ensure_not_running()
            session = Session.create(ops, resource_id=resource_id)
            session.active = True
            self._session = session
            self._stop_requested = False
            self._state = DispatchState.RUNNING

        logger.info(
            "Session started",
            session_id=session.session_id,
            resource_id=resource_id,
            operations=session.original_count,
            estimated_minutes=round(estimate_duration(session.original_count, self._limiter.config) / 60, 1),
        )
        self._store.save(session)
        return session.session_id

    def attach(self, session: Session) -> None:
        """Adopt a restored session without running it.

        Raises:
            AlreadyRunningError: If a session is active.
        """
        with self._lock:
            self._ensure_not_running()
            session.active = False
            self._session = session
            self._stop_requested = False
            self._state = DispatchState.STOPPED if session.remaining else DispatchState.IDLE

    def reset(self) -> None:
        """Forget the in-memory session.

        Raises:
            AlreadyRunningError: If a session is active.
        """
        with self._lock:
            self._ensure_not_running()
            self._session = None
            self._stop_requested = False
            self._state = DispatchState.IDLE

    def dispatch(self, operations: Iterable[Operation], resource_id: str | None = None) -> RunSummary:
        """Start a session for ``operations`` and drain it."""
        self.start_session(operations, resource_id)
        return self.run()

    def stop(self) -> bool:
        """Request a cooperative stop.

        A stop between start_session() and run() is kept: that run() exits
        before its first send.

        Returns:
            True if a session was active.
        """
        with self._lock:
            session = self._session
            if session is None or not session.active:
                return False
            session.active = False
            self._stop_requested = True
        logger.info("Stop requested", session_id=session.session_id, remaining=session.remaining)
        return True

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        """Drain the current session's queue until it is empty or stopped.

        The checkpoint is purged when the queue drains and retained otherwise,
        including when an unexpected exception escapes the loop. A stop
        requested before the loop started ends the run without sending and
        leaves the session checkpointed as cancelled; a later run() drains it.

        Raises:
            NoActiveSessionError: If no session was started or attached.
            AlreadyRunningError: If the loop is already running.
        """
        with self._lock:
            session = self._session
            if session is None:
                raise NoActiveSessionError()
            if self._looping:
                raise AlreadyRunningError(session.session_id)
            self._looping = True
            session.active = not self._stop_requested
            self._stop_requested = False
            self._state = DispatchState.RUNNING

        with session_context(session.session_id):
            return self._drain(session)

    def _drain(self, session: Session) -> RunSummary:
        started = self._clock.monotonic()
        confirmed = 0
        fatal = False
        self._refresh_hint()

        try:
            while True:
                with self._lock:
                    if not session.active or not session.pending_queue:
                        break
                    # Peek, don't pop: the in-flight operation stays checkpointed.
                    operation = session.pending_queue[0]

                try:
                    self._limiter.admit()
                    self._client.send(operation)
                except SendError as e:
                    if self._on_failure(session, operation, e):
                        fatal = True
                        break
                    continue

                confirmed += 1
                self._on_success(session, operation, started, confirmed)
        finally:
            with self._lock:
                session.active = False
                self._looping = False
                self._stop_requested = False
                self._state = DispatchState.STOPPED if session.pending_queue else DispatchState.IDLE
            self._persist_final(session)

        if fatal:
            reason = StopReason.INSUFFICIENT_RESOURCE
        elif not session.pending_queue:
            reason = StopReason.COMPLETED
        else:
            reason = StopReason.CANCELLED
        return self._summarize(session, reason, started)

    def _on_success(self, session: Session, operation: Operation, started: float, confirmed: int) -> None:
        with self._lock:
            session.pending_queue.popleft()
            session.completed_count += 1
            session.retry_counts.pop(operation.key, None)
            completed = session.completed_count

        if completed % self.config.checkpoint_interval == 0:
            self._store.save(session)

        if completed % self.config.progress_interval == 0:
            self._emit_progress(session, started, confirmed)

    def _on_failure(self, session: Session, operation: Operation, error: SendError) -> bool:
        """Account for a failed send. Returns True if the session must stop."""
        with self._lock:
            session.pending_queue.popleft()
            session.error_count += 1
            if error.fatal:
                session.dropped_count += 1
                session.active = False
                requeued = False
            else:
                requeued = self._settle_failed(session, operation)

        logger.warning(
            "Operation failed",
            session_id=session.session_id,
            key=operation.key,
            kind=error.kind.value,
            error=str(error),
            requeued=requeued,
            errors=session.error_count,
        )
        self._store.save(session)

        if error.fatal:
            logger.error(
                "Out of budget, stopping session",
                session_id=session.session_id,
                completed=session.completed_count,
                remaining=session.remaining,
            )
            return True

        self._cool_down(error.kind)
        return False

    def _settle_failed(self, session: Session, operation: Operation) -> bool:
        """Apply the failure policy to a non-fatal failure. Returns True if requeued."""
        if self.config.failure_policy is FailurePolicy.REQUEUE:
            attempts = session.retry_counts.get(operation.key, 0) + 1
            if attempts <= self.config.max_retries:
                session.retry_counts[operation.key] = attempts
                session.pending_queue.append(operation)
                return True
            session.retry_counts.pop(operation.key, None)
            logger.warning("Retries exhausted, dropping operation", key=operation.key, attempts=attempts)
        session.dropped_count += 1
        return False

    def _cool_down(self, kind: FailureKind) -> None:
        if kind is FailureKind.BURST_LIMITED:
            # The remote's burst accounting disagrees with ours; start over after the cooldown.
            self._limiter.reset_burst()
            seconds = self.config.burst_cooldown_seconds
            logger.warning("Burst limit hit, extended cooldown", cooldown_seconds=seconds)
        elif kind is FailureKind.RATE_LIMITED:
            seconds = self.config.rate_limit_cooldown_seconds
            logger.warning("Rate limited, cooling down", cooldown_seconds=seconds)
        else:
            seconds = self.config.error_cooldown_seconds

        with self._lock:
            self._state = DispatchState.COOLDOWN
        self._clock.sleep(seconds)
        with self._lock:
            if self._state is DispatchState.COOLDOWN:
                self._state = DispatchState.RUNNING

    def _emit_progress(self, session: Session, started: float, confirmed: int) -> None:
        elapsed = self._clock.monotonic() - started
        per_minute = confirmed / (elapsed / 60) if elapsed > 0 else 0.0
        balance = self._balance_probe.fetch_balance() if self._balance_probe is not None else None
        event = ProgressEvent(
            session_id=session.session_id,
            completed=session.completed_count,
            remaining=session.remaining,
            per_minute=round(per_minute, 1),
            elapsed_seconds=round(elapsed, 3),
            balance=balance,
        )
        logger.info(
            "Progress",
            session_id=event.session_id,
            completed=event.completed,
            remaining=event.remaining,
            per_minute=event.per_minute,
            balance=balance,
        )
        if self._on_progress is not None:
            self._on_progress(event)
        self._refresh_hint()

    def _persist_final(self, session: Session) -> None:
        if session.pending_queue:
            self._store.save(session)
        else:
            self._store.clear()

    def _summarize(self, session: Session, reason: StopReason, started: float) -> RunSummary:
        balance = self._balance_probe.fetch_balance() if self._balance_probe is not None else None
        summary = RunSummary(
            session_id=session.session_id,
            stop_reason=reason,
            completed=session.completed_count,
            errors=session.error_count,
            dropped=session.dropped_count,
            remaining=session.remaining,
            elapsed_seconds=round(self._clock.monotonic() - started, 3),
            balance=balance,
        )
        log = logger.info if reason is StopReason.COMPLETED else logger.warning
        log(
            "Session finished",
            session_id=summary.session_id,
            stop_reason=reason.value,
            completed=summary.completed,
            errors=summary.errors,
            dropped=summary.dropped,
            remaining=summary.remaining,
            resumable=summary.resumable,
        )
        return summary

    def _refresh_hint(self) -> None:
        """Poll the advisory admission-policy hint. Never relaxes the limiter."""
        if self._status_probe is None:
            return
        hint = self._status_probe.fetch_hint()
        if hint is None:
            return
        self._hint = hint
        if hint.tier not in self._announced_tiers:
            self._announced_tiers.add(hint.tier)
            logger.info(
                "Detected rate limit tier",
                tier=hint.tier,
                remote_burst_quota=hint.burst_quota,
                local_burst_quota=self._limiter.config.burst_quota,
                min_spacing_ms=self._limiter.config.min_spacing_ms,
            )

    def _ensure_not_running(self) -> None:
        if self._looping or (self._session is not None and self._session.active):
            raise AlreadyRunningError(self._session.session_id if self._session else None)
