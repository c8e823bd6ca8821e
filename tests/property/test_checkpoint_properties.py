# tests/property/test_checkpoint_properties.py
"""Property-based tests for checkpoint persistence and queue conservation.

Checkpoint Properties:
- save() then load() reproduces the session exactly (keys stay tuples, payload
  mappings keep their non-string keys)
- A checkpoint older than the expiry is never returned, however often asked
- Expired checkpoints are purged by load() and stay purged

Dispatch Properties:
- completed + dropped + pending == original, whatever fails and whatever the policy
"""

from __future__ import annotations

from datetime import timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from gridpush.contracts import (
    BurstLimitedError,
    DispatchConfig,
    FailurePolicy,
    Operation,
    RateLimitConfig,
    RateLimitedError,
    RemoteError,
    SendError,
    SendTimeoutError,
    Session,
    StopReason,
)
from gridpush.core.checkpoint import CheckpointStore
from gridpush.core.clock import MockClock
from gridpush.core.rate_limit import RateLimiter
from gridpush.engine import Dispatcher
from tests.helpers.fakes import RecordingClient, make_operations

colors = st.from_regex(r"#[0-9A-F]{6}", fullmatch=True)
keys = st.tuples(st.integers(0, 999), st.integers(0, 999))
# Payloads are opaque: plain colors or mappings keyed by ints and tuples.
payloads = colors | st.dictionaries(st.integers(0, 9) | keys, colors, max_size=3)
operations = st.lists(st.builds(Operation, key=keys, payload=payloads), min_size=1, max_size=40)

recoverable_errors = st.sampled_from(
    [RemoteError("boom"), SendTimeoutError(), RateLimitedError("rate limit"), BurstLimitedError("burst limit")]
)


class TestCheckpointRoundTrip:
    @given(ops=operations, consumed=st.integers(0, 40), errors=st.integers(0, 5), retried=st.integers(0, 3))
    @settings(max_examples=50)
    def test_save_then_load_reproduces_session(self, ops: list[Operation], consumed: int, errors: int, retried: int) -> None:
        clock = MockClock()
        store = CheckpointStore.in_memory(clock=clock)
        session = Session.create(ops, resource_id="canvas")
        for _ in range(min(consumed, len(ops))):
            session.pending_queue.popleft()
            session.completed_count += 1
        session.error_count = errors
        if retried and session.pending_queue:
            session.retry_counts[session.pending_queue[0].key] = retried

        assert store.save(session)
        restored = store.load()
        store.close()

        assert restored is not None
        assert restored.session_id == session.session_id
        assert restored.original_operations == session.original_operations
        assert list(restored.pending_queue) == list(session.pending_queue)
        assert restored.completed_count == session.completed_count
        assert restored.error_count == session.error_count
        assert restored.retry_counts == session.retry_counts
        assert restored.last_checkpoint_time == session.last_checkpoint_time


class TestExpiry:
    @given(age_hours=st.floats(min_value=24.001, max_value=24 * 30), polls=st.integers(1, 4))
    @settings(max_examples=30)
    def test_expired_checkpoint_never_returned(self, age_hours: float, polls: int) -> None:
        clock = MockClock()
        store = CheckpointStore.in_memory(clock=clock)
        store.save(Session.create(make_operations(3)))
        clock.advance(timedelta(hours=age_hours).total_seconds())

        results = [store.load() for _ in range(polls)]
        peeked = store.peek()
        store.close()

        assert results == [None] * polls
        assert peeked is None

    @given(age_hours=st.floats(min_value=0, max_value=23.99))
    @settings(max_examples=30)
    def test_fresh_checkpoint_always_returned(self, age_hours: float) -> None:
        clock = MockClock()
        store = CheckpointStore.in_memory(clock=clock)
        store.save(Session.create(make_operations(3)))
        clock.advance(timedelta(hours=age_hours).total_seconds())

        assert store.load() is not None
        assert store.load() is not None
        store.close()


class TestQueueConservation:
    @given(
        count=st.integers(1, 30),
        failures=st.dictionaries(st.integers(0, 60), recoverable_errors, max_size=10),
        policy=st.sampled_from(list(FailurePolicy)),
        max_retries=st.integers(0, 3),
    )
    @settings(max_examples=50)
    def test_every_operation_accounted_for(
        self, count: int, failures: dict[int, SendError], policy: FailurePolicy, max_retries: int
    ) -> None:
        clock = MockClock()
        store = CheckpointStore.in_memory(clock=clock)
        violations: list[int] = []

        def check(index: int, operation: Operation) -> None:
            assert dispatcher.session is not None
            if not dispatcher.session.is_conserved():
                violations.append(index)

        client = RecordingClient(clock, failures=failures, on_send=check)
        dispatcher = Dispatcher(
            client,
            store,
            limiter=RateLimiter(RateLimitConfig.no_jitter(), clock=clock),
            config=DispatchConfig(failure_policy=policy, max_retries=max_retries),
            clock=clock,
        )

        summary = dispatcher.dispatch(make_operations(count))
        store.close()

        assert violations == []
        assert summary.stop_reason is StopReason.COMPLETED
        assert summary.completed + summary.dropped + summary.remaining == count
        if policy is FailurePolicy.DROP:
            assert summary.dropped == summary.errors
        assert len(client.sent) == summary.completed + summary.errors
