"""Tests for the dispatch loop."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from gridpush.contracts import (
    AlreadyRunningError,
    BurstLimitedError,
    DispatchConfig,
    DispatchState,
    FailurePolicy,
    InsufficientResourceError,
    NoActiveSessionError,
    Operation,
    ProgressEvent,
    RateLimitedError,
    RateLimitHint,
    RemoteError,
    SendTimeoutError,
    StopReason,
)
from gridpush.core.checkpoint import CheckpointStore
from gridpush.core.clock import MockClock
from gridpush.core.rate_limit import RateLimiter
from gridpush.engine import Dispatcher
from tests.helpers.fakes import FixedBalanceProbe, FixedStatusProbe, RecordingClient, make_operations

MakeDispatcher = Callable[..., Dispatcher]


class TestFullRun:
    """A batch that never fails drains completely and leaves no checkpoint."""

    @pytest.mark.slow
    def test_thousand_operations_respect_burst_quota(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        """1000 sends at 15 per 10 s take at least (1000/15 - 1) windows."""
        client = RecordingClient(clock)
        dispatcher = make_dispatcher(client)

        summary = dispatcher.dispatch(make_operations(1000))

        assert summary.stop_reason is StopReason.COMPLETED
        assert summary.completed == 1000
        assert summary.remaining == 0
        assert len(client.sent) == 1000
        assert clock.monotonic() >= (1000 / 15 - 1) * 10
        assert store.peek() is None
        assert dispatcher.state is DispatchState.IDLE

    def test_sends_in_submission_order(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        client = RecordingClient(clock)
        operations = make_operations(30)

        make_dispatcher(client).dispatch(operations)

        assert client.sent_operations == operations

    def test_every_operation_lands_on_grid(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        client = RecordingClient(clock)
        operations = make_operations(40, color="#00FF00")

        make_dispatcher(client).dispatch(operations)

        assert client.grid.cells == {op.key: "#00FF00" for op in operations}

    def test_consecutive_sends_are_spaced(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        client = RecordingClient(clock)

        make_dispatcher(client).dispatch(make_operations(20))

        times = client.send_times
        assert all(b - a >= 0.4 - 1e-9 for a, b in zip(times, times[1:], strict=False))

    def test_empty_batch_rejected(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock))

        with pytest.raises(ValueError, match="No operations"):
            dispatcher.start_session([])

    def test_run_without_session_rejected(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock))

        with pytest.raises(NoActiveSessionError):
            dispatcher.run()


class TestInsufficientResource:
    """Running out of budget stops the session and keeps the checkpoint."""

    def test_stops_at_fifty_first_operation(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        client = RecordingClient(clock, failures={50: InsufficientResourceError("Insufficient credits")})
        dispatcher = make_dispatcher(client)

        summary = dispatcher.dispatch(make_operations(100))

        assert summary.stop_reason is StopReason.INSUFFICIENT_RESOURCE
        assert summary.completed == 50
        assert summary.errors == 1
        assert summary.remaining == 49
        assert len(client.sent) == 51
        assert dispatcher.state is DispatchState.STOPPED

        record = store.peek()
        assert record is not None
        assert record.session.completed_count == 50
        assert record.session.remaining == 49
        assert record.session.is_conserved()

    def test_no_cooldown_after_fatal_failure(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        client = RecordingClient(clock, failures={0: InsufficientResourceError()})
        config = DispatchConfig(error_cooldown_seconds=7.0)

        make_dispatcher(client, config=config).dispatch(make_operations(5))

        assert 7.0 not in clock.sleeps


class TestFailureCooldowns:
    """Each failure kind maps to its own cooldown."""

    @pytest.mark.parametrize(
        ("error", "cooldown"),
        [
            (BurstLimitedError("burst limit exceeded"), 15.0),
            (RateLimitedError("rate limit"), 10.0),
            (SendTimeoutError(), 1.0),
            (RemoteError("boom"), 1.0),
        ],
    )
    def test_cooldown_per_kind(
        self, clock: MockClock, make_dispatcher: MakeDispatcher, error: Exception, cooldown: float
    ) -> None:
        client = RecordingClient(clock, failures={2: error})

        summary = make_dispatcher(client).dispatch(make_operations(5))

        assert cooldown in clock.sleeps
        assert summary.errors == 1
        assert summary.dropped == 1
        assert summary.completed == 4
        assert summary.stop_reason is StopReason.COMPLETED

    def test_burst_failure_resets_burst_log(self, clock: MockClock, limiter: RateLimiter, make_dispatcher: MakeDispatcher) -> None:
        usage_after_failure: list[int] = []

        def observe(index: int, operation: Operation) -> None:
            if index == 6:
                # First send after the cooldown: only the sends since the reset count
                usage_after_failure.append(limiter.burst_usage())

        client = RecordingClient(clock, failures={5: BurstLimitedError("burst limit")}, on_send=observe)

        make_dispatcher(client).dispatch(make_operations(10))

        assert usage_after_failure == [1]

    def test_state_is_cooldown_while_sleeping(self, clock: MockClock, store: CheckpointStore, limiter: RateLimiter) -> None:
        states: list[DispatchState] = []

        class ObservingClock(MockClock):
            def sleep(self, seconds: float) -> None:
                if seconds == 10.0:
                    states.append(dispatcher.state)
                super().sleep(seconds)

        observing = ObservingClock()
        client = RecordingClient(observing, failures={0: RateLimitedError("rate limit")})
        dispatcher = Dispatcher(
            client,
            store,
            limiter=RateLimiter(limiter.config, clock=observing),
            clock=observing,
        )

        dispatcher.dispatch(make_operations(2))

        assert states == [DispatchState.COOLDOWN]

    def test_failure_is_checkpointed_immediately(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        errors_seen: list[int] = []

        def observe(index: int, operation: Operation) -> None:
            if index == 4:
                record = store.peek()
                assert record is not None
                errors_seen.append(record.session.error_count)

        client = RecordingClient(clock, failures={3: RemoteError("boom")}, on_send=observe)

        make_dispatcher(client).dispatch(make_operations(8))

        assert errors_seen == [1]


class TestFailurePolicy:
    """drop abandons a failed operation; requeue retries it at the tail."""

    def test_drop_policy_does_not_retry(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        operations = make_operations(5)
        client = RecordingClient(clock, failures={0: RemoteError("boom")})

        make_dispatcher(client).dispatch(operations)

        assert client.sent_operations == operations

    def test_requeue_policy_retries_at_tail(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        operations = make_operations(5)
        client = RecordingClient(clock, failures={0: RemoteError("boom")})
        config = DispatchConfig(failure_policy=FailurePolicy.REQUEUE)

        summary = make_dispatcher(client, config=config).dispatch(operations)

        assert client.sent_operations == [*operations, operations[0]]
        assert summary.completed == 5
        assert summary.errors == 1
        assert summary.dropped == 0

    def test_requeue_drops_after_max_retries(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        doomed = Operation(key=(9, 9), payload="#000000")

        def reject(index: int, operation: Operation) -> None:
            if operation == doomed:
                raise RemoteError("rejected")

        client = RecordingClient(clock, on_send=reject)
        config = DispatchConfig(failure_policy=FailurePolicy.REQUEUE, max_retries=2)
        dispatcher = make_dispatcher(client, config=config)

        summary = dispatcher.dispatch([doomed, *make_operations(3)])

        assert client.sent_operations.count(doomed) == 3
        assert summary.errors == 3
        assert summary.dropped == 1
        assert summary.completed == 3
        assert dispatcher.session is not None
        assert dispatcher.session.retry_counts == {}

    def test_queue_conserved_at_every_send(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        checks: list[bool] = []

        def observe(index: int, operation: Operation) -> None:
            assert dispatcher.session is not None
            checks.append(dispatcher.session.is_conserved())

        failures = {i: RemoteError("boom") for i in (1, 4, 9, 10)}
        client = RecordingClient(clock, failures=failures, on_send=observe)
        config = DispatchConfig(failure_policy=FailurePolicy.REQUEUE, max_retries=1)
        dispatcher = make_dispatcher(client, config=config)

        dispatcher.dispatch(make_operations(12))

        assert checks
        assert all(checks)
        assert dispatcher.session is not None
        assert dispatcher.session.is_conserved()


class TestCheckpointCadence:
    def test_checkpoint_every_ten_confirmations(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        seen: dict[int, int] = {}

        def observe(index: int, operation: Operation) -> None:
            record = store.peek()
            assert record is not None
            seen[index] = record.session.completed_count

        client = RecordingClient(clock, on_send=observe)

        make_dispatcher(client).dispatch(make_operations(25))

        assert seen[0] == 0
        assert seen[9] == 0
        assert seen[10] == 10
        assert seen[19] == 10
        assert seen[20] == 20

    def test_in_flight_operation_stays_checkpointed(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        def crash(index: int, operation: Operation) -> None:
            if index == 3:
                raise RuntimeError("process died")

        operations = make_operations(6)
        client = RecordingClient(clock, on_send=crash)
        dispatcher = make_dispatcher(client)

        with pytest.raises(RuntimeError, match="process died"):
            dispatcher.dispatch(operations)

        record = store.peek()
        assert record is not None
        assert list(record.session.pending_queue) == operations[3:]
        assert record.session.is_conserved()
        assert dispatcher.state is DispatchState.STOPPED
        assert not dispatcher.is_running


class TestStop:
    def test_stop_takes_effect_after_current_send(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        def stop_at_ten(index: int, operation: Operation) -> None:
            if index == 9:
                assert dispatcher.stop() is True

        client = RecordingClient(clock, on_send=stop_at_ten)
        dispatcher = make_dispatcher(client)

        summary = dispatcher.dispatch(make_operations(30))

        assert summary.stop_reason is StopReason.CANCELLED
        assert summary.completed == 10
        assert summary.remaining == 20
        assert summary.resumable
        assert dispatcher.state is DispatchState.STOPPED
        record = store.peek()
        assert record is not None
        assert record.session.remaining == 20
        assert record.session.active is False

    def test_stop_without_session_is_noop(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        assert make_dispatcher(RecordingClient(clock)).stop() is False

    def test_stop_before_run_is_honored(
        self, clock: MockClock, store: CheckpointStore, make_dispatcher: MakeDispatcher
    ) -> None:
        client = RecordingClient(clock)
        dispatcher = make_dispatcher(client)
        dispatcher.start_session(make_operations(20))

        assert dispatcher.stop() is True
        summary = dispatcher.run()

        assert client.sent == []
        assert summary.stop_reason is StopReason.CANCELLED
        assert summary.remaining == 20
        assert dispatcher.state is DispatchState.STOPPED
        record = store.peek()
        assert record is not None
        assert record.session.remaining == 20

        # The request is consumed: the next run drains the session.
        summary = dispatcher.run()

        assert summary.stop_reason is StopReason.COMPLETED
        assert len(client.sent) == 20
        assert store.peek() is None

    def test_stop_request_cleared_by_new_session(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        client = RecordingClient(clock)
        dispatcher = make_dispatcher(client)
        dispatcher.start_session(make_operations(5))
        dispatcher.stop()
        dispatcher.start_session(make_operations(5))

        summary = dispatcher.run()

        assert summary.stop_reason is StopReason.COMPLETED
        assert len(client.sent) == 5


class TestConcurrencyGuard:
    def test_second_start_rejected_while_active(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock))
        session_id = dispatcher.start_session(make_operations(3))

        with pytest.raises(AlreadyRunningError) as exc_info:
            dispatcher.start_session(make_operations(3))

        assert exc_info.value.session_id == session_id

    def test_start_rejected_from_inside_run(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        rejected: list[bool] = []

        def try_start(index: int, operation: Operation) -> None:
            if index == 0:
                try:
                    dispatcher.start_session(make_operations(2))
                except AlreadyRunningError:
                    rejected.append(True)

        dispatcher = make_dispatcher(RecordingClient(clock, on_send=try_start))

        summary = dispatcher.dispatch(make_operations(3))

        assert rejected == [True]
        assert summary.completed == 3

    def test_new_session_allowed_after_completion(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock))
        first = dispatcher.dispatch(make_operations(2))

        second = dispatcher.dispatch(make_operations(2))

        assert first.session_id != second.session_id


class TestStatusAndProgress:
    def test_status_during_run(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        snapshots = []

        def observe(index: int, operation: Operation) -> None:
            if index == 5:
                snapshots.append(dispatcher.get_status())

        dispatcher = make_dispatcher(RecordingClient(clock, on_send=observe))

        dispatcher.dispatch(make_operations(10))

        status = snapshots[0]
        assert status.running is True
        assert status.state is DispatchState.RUNNING
        assert status.completed == 5
        assert status.queue_depth == 5
        assert status.original_count == 10
        assert status.current_burst_usage == 6
        assert status.current_rate == 6
        assert status.burst_quota == 15
        assert status.min_spacing_ms == 400
        assert status.has_resumable_checkpoint is True

    def test_status_after_completion(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock))
        dispatcher.dispatch(make_operations(4))

        status = dispatcher.get_status()

        assert status.running is False
        assert status.state is DispatchState.IDLE
        assert status.completed == 4
        assert status.queue_depth == 0
        assert status.has_resumable_checkpoint is False

    def test_status_without_session(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        status = make_dispatcher(RecordingClient(clock)).get_status()

        assert status.session_id is None
        assert status.queue_depth == 0
        assert status.running is False

    def test_progress_every_interval(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        events: list[ProgressEvent] = []
        probe = FixedBalanceProbe(500)
        config = DispatchConfig(progress_interval=50)

        make_dispatcher(RecordingClient(clock), config=config, on_progress=events.append, balance_probe=probe).dispatch(
            make_operations(120)
        )

        assert [e.completed for e in events] == [50, 100]
        assert [e.remaining for e in events] == [70, 20]
        assert all(e.per_minute > 0 for e in events)
        assert all(e.balance == 500 for e in events)

    def test_tier_hint_reported_in_status(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        probe = FixedStatusProbe(RateLimitHint(tier="premium", burst_quota=60))
        dispatcher = make_dispatcher(RecordingClient(clock), status_probe=probe)

        dispatcher.dispatch(make_operations(3))

        assert dispatcher.get_status().tier == "premium"
        # The hint never relaxes the local policy
        assert dispatcher.get_status().burst_quota == 15


class TestPreflight:
    def test_deficit_reported(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock), balance_probe=FixedBalanceProbe(10))

        report = dispatcher.preflight(make_operations(25))

        assert report.required == 25
        assert report.deficit == 15
        assert report.sufficient is False

    def test_unknown_balance(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        report = make_dispatcher(RecordingClient(clock)).preflight(make_operations(5))

        assert report.balance is None
        assert report.sufficient is None
        assert report.deficit == 0

    def test_preflight_never_blocks_dispatch(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        dispatcher = make_dispatcher(RecordingClient(clock), balance_probe=FixedBalanceProbe(0))
        operations = make_operations(3)

        dispatcher.preflight(operations)
        summary = dispatcher.dispatch(operations)

        assert summary.completed == 3


class TestDuplicateKeys:
    def test_duplicates_kept_by_default(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        operations = [
            Operation(key=(1, 1), payload="#111111"),
            Operation(key=(1, 1), payload="#222222"),
        ]
        client = RecordingClient(clock)

        make_dispatcher(client).dispatch(operations)

        assert client.sent_operations == operations
        assert client.grid.cells[(1, 1)] == "#222222"

    def test_duplicates_collapsed_when_configured(self, clock: MockClock, make_dispatcher: MakeDispatcher) -> None:
        operations = [
            Operation(key=(1, 1), payload="#111111"),
            Operation(key=(2, 2), payload="#333333"),
            Operation(key=(1, 1), payload="#222222"),
        ]
        client = RecordingClient(clock)
        dispatcher = make_dispatcher(client, config=DispatchConfig(deduplicate_keys=True))

        summary = dispatcher.dispatch(operations)

        assert client.sent_operations == operations[1:]
        assert summary.completed == 2
        assert dispatcher.session is not None
        assert dispatcher.session.original_count == 2
