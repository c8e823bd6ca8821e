# tests/conftest.py
"""Shared test fixtures and hypothesis configuration.

Everything time-dependent runs on a MockClock: sleeps advance mock time
instead of blocking, so a thousand-operation run with burst waits finishes
in well under a second of real time.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

from __future__ import annotations

import os
import random
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from gridpush.contracts import DispatchConfig, RateLimitConfig
from gridpush.core.checkpoint import CheckpointStore
from gridpush.core.clock import MockClock
from gridpush.core.rate_limit import RateLimiter
from gridpush.engine import Dispatcher
from tests.helpers.fakes import FakeGrid, RecordingClient

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> MockClock:
    return MockClock()


@pytest.fixture
def store(clock: MockClock) -> Iterator[CheckpointStore]:
    checkpoint_store = CheckpointStore.in_memory(clock=clock)
    yield checkpoint_store
    checkpoint_store.close()


@pytest.fixture
def grid() -> FakeGrid:
    return FakeGrid()


@pytest.fixture
def limiter(clock: MockClock) -> RateLimiter:
    return RateLimiter(RateLimitConfig.no_jitter(), clock=clock, rng=random.Random(0))


@pytest.fixture
def make_dispatcher(
    clock: MockClock,
    store: CheckpointStore,
    limiter: RateLimiter,
) -> Callable[..., Dispatcher]:
    """Factory for a dispatcher on the shared clock, store and limiter.

    Keyword arguments override the defaults, e.g.
    ``make_dispatcher(client, config=DispatchConfig(failure_policy=FailurePolicy.REQUEUE))``.
    """

    def _make(client: RecordingClient, **kwargs: Any) -> Dispatcher:
        kwargs.setdefault("limiter", limiter)
        kwargs.setdefault("config", DispatchConfig())
        kwargs.setdefault("clock", clock)
        return Dispatcher(client, store, **kwargs)

    return _make
