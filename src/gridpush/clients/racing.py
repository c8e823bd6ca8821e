"""First-settlement-wins request client racing several channels."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from types import TracebackType

import structlog

from gridpush.clients.base import Channel
from gridpush.clients.failure_classifier import error_from_message
from gridpush.contracts import Operation, SendError, SendTimeoutError

logger = structlog.get_logger(__name__)


class _Settlement:
    """Single-assignment outcome of one send.

    The first channel future to finish settles it; later completions are
    counted and otherwise ignored, so a send is never counted twice.
    """

    def __init__(self, on_ignored: Callable[[str], None]) -> None:
        self._lock = threading.Lock()
        self._settled = threading.Event()
        # (winning future, channel name); written once, under the lock.
        self._outcome: tuple[Future[None], str] | None = None
        self._on_ignored = on_ignored

    def settle(self, future: Future[None], name: str) -> None:
        if future.cancelled():
            return
        with self._lock:
            if self._outcome is not None:
                self._on_ignored(name)
                return
            self._outcome = (future, name)
        self._settled.set()

    @property
    def outcome(self) -> tuple[Future[None], str] | None:
        with self._lock:
            return self._outcome

    def wait(self, timeout: float) -> tuple[Future[None], str] | None:
        """Block until settled or ``timeout`` elapses. None means still unsettled."""
        if not self._settled.wait(timeout=max(timeout, 0.0)):
            return None
        return self.outcome


class RacingRequestClient:
    """RequestClient that races one or more channels for each write.

    The primary channel is started immediately; each fallback channel is
    started only if nothing has settled after ``fallback_delay`` seconds.
    The first channel to finish, successfully or not, decides the outcome.
    Channels that have not started yet are cancelled; channels already in
    flight run to completion and their results are ignored.

    Example:
        with RacingRequestClient([primary, fallback], timeout=8.0) as client:
            client.send(Operation(key=(10, 20), payload="#FF0000"))
    """

    def __init__(
        self,
        channels: Sequence[Channel],
        *,
        timeout: float = 8.0,
        fallback_delay: float = 0.2,
    ) -> None:
        """Initialize racing client.

        Args:
            channels: Channels in priority order (at least one)
            timeout: Deadline in seconds for a write to settle
            fallback_delay: Delay before starting each fallback channel

        Raises:
            ValueError: If no channels are given or timings are invalid.
        """
        if not channels:
            raise ValueError("RacingRequestClient needs at least one channel")
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        if fallback_delay < 0:
            raise ValueError(f"fallback_delay must be >= 0, got {fallback_delay}")
        self._channels = tuple(channels)
        self._timeout = timeout
        self._fallback_delay = fallback_delay
        # Losers may still be running when the next send starts.
        self._executor = ThreadPoolExecutor(max_workers=len(self._channels) * 2, thread_name_prefix="gridpush-send")
        self._ignored_lock = threading.Lock()
        self._ignored_settlements = 0

    @property
    def ignored_settlements(self) -> int:
        """Channel completions that arrived after their send was already settled."""
        with self._ignored_lock:
            return self._ignored_settlements

    def _record_ignored(self, channel_name: str) -> None:
        with self._ignored_lock:
            self._ignored_settlements += 1
        logger.debug("Ignoring late channel settlement", channel=channel_name)

    def send(self, operation: Operation) -> None:
        """Send one write, settling on the first channel to finish.

        Raises:
            SendTimeoutError: If no channel settles within the deadline.
            SendError: The winning channel's failure, classified.
        """
        deadline = time.monotonic() + self._timeout
        settlement = _Settlement(self._record_ignored)
        futures: list[Future[None]] = []

        for index, channel in enumerate(self._channels):
            if index > 0:
                stagger = min(self._fallback_delay, deadline - time.monotonic())
                if settlement.wait(stagger) is not None:
                    break
                logger.debug("Starting fallback channel", channel=channel.name, key=operation.key)
            future = self._executor.submit(channel.send, operation)
            future.add_done_callback(partial(settlement.settle, name=channel.name))
            futures.append(future)

        outcome = settlement.wait(deadline - time.monotonic())

        for future in futures:
            future.cancel()

        if outcome is None:
            raise SendTimeoutError(f"placement timeout after {self._timeout:g}s")

        winner, name = outcome
        error = winner.exception()
        if error is None:
            return
        if isinstance(error, SendError):
            raise error
        # Channels should translate their own errors; anything else is classified by text.
        logger.debug("Unclassified channel error", channel=name, error_type=type(error).__name__)
        raise error_from_message(str(error) or type(error).__name__) from error

    def close(self) -> None:
        """Stop accepting sends and drop channels that have not started."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        for channel in self._channels:
            close = getattr(channel, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> RacingRequestClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
