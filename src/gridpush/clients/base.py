# src/gridpush/clients/base.py
"""Contracts for the remote collaborators of the dispatcher.

The dispatcher only ever talks to these protocols. Concrete transports
live in clients/http.py; tests use in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Hashable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from gridpush.contracts import Operation, RateLimitHint


class RequestClient(Protocol):
    """Performs one remote write and settles it.

    send() returns normally once the remote confirms the write and raises a
    SendError subclass (SendTimeoutError, RateLimitedError, BurstLimitedError,
    InsufficientResourceError, RemoteError) otherwise. It must settle within
    a bounded deadline.
    """

    def send(self, operation: Operation) -> None: ...


class Channel(Protocol):
    """One transport able to carry a write.

    Same contract as RequestClient. Several channels can be raced by
    RacingRequestClient, which settles on whichever finishes first.
    """

    name: str

    def send(self, operation: Operation) -> None: ...


class RemoteStateReader(Protocol):
    """Authoritative read of the remote grid, used by reconciliation.

    read() returns the current payload for every key it knows about. Keys
    absent from the result are treated as not matching any intended payload.
    """

    def read(self, keys: Sequence[Hashable]) -> Mapping[Hashable, Any]: ...


class BalanceProbe(Protocol):
    """Advisory read of the remaining write budget.

    Returns None when the balance cannot be determined. Never required for
    correctness.
    """

    def fetch_balance(self) -> int | None: ...


class StatusProbe(Protocol):
    """Advisory read of the remote admission policy (tier and quota)."""

    def fetch_hint(self) -> RateLimitHint | None: ...
