"""CLI helper functions: wiring settings into a ready-to-use Embedder."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from types import TracebackType
from typing import TYPE_CHECKING

import httpx

from gridpush.clients import (
    HttpBalanceProbe,
    HttpGridReader,
    HttpStatusProbe,
    RacingRequestClient,
    build_channels,
    build_http_client,
)
from gridpush.contracts import DispatchConfig, RateLimitConfig
from gridpush.core.checkpoint import CheckpointStore
from gridpush.core.clock import DEFAULT_CLOCK, Clock
from gridpush.core.operations_io import colors_match
from gridpush.core.rate_limit import RateLimiter
from gridpush.engine import Dispatcher, ProgressCallback, SessionManager

if TYPE_CHECKING:
    from gridpush.core.config import GridpushSettings


@dataclass
class Embedder:
    """Everything one CLI invocation needs, built once from settings.

    Collaborators are injected rather than looked up, so tests can build an
    Embedder around fakes and a MockClock.
    """

    dispatcher: Dispatcher
    sessions: SessionManager
    store: CheckpointStore
    balance_probe: HttpBalanceProbe | None = None
    client: RacingRequestClient | None = None
    http: httpx.Client | None = None
    canvas_size: tuple[int, int] = (1000, 1000)
    resource_id: str | None = None
    _closed: bool = field(default=False, init=False, repr=False)

    def close(self) -> None:
        """Release threads, connections and database handles."""
        if self._closed:
            return
        self._closed = True
        if self.client is not None:
            self.client.close()
        if self.http is not None:
            self.http.close()
        self.store.close()

    def __enter__(self) -> Embedder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


def build_embedder(
    settings: GridpushSettings,
    *,
    clock: Clock = DEFAULT_CLOCK,
    transport: httpx.BaseTransport | None = None,
    on_progress: ProgressCallback | None = None,
) -> Embedder:
    """Build an Embedder from validated settings.

    Args:
        settings: Validated GridpushSettings instance
        clock: Time source shared by limiter, dispatcher and store
        transport: Optional httpx transport override (tests pass MockTransport)
        on_progress: Optional progress callback for the dispatcher

    Returns:
        Embedder wired to the configured remote and checkpoint database.
    """
    remote = settings.remote
    http = build_http_client(remote, transport=transport)
    client = RacingRequestClient(
        build_channels(http, remote),
        timeout=remote.send_timeout_seconds,
        fallback_delay=remote.fallback_delay_seconds,
    )
    store = CheckpointStore.from_url(
        settings.checkpoint.url,
        slot=settings.checkpoint.slot,
        expiry=timedelta(hours=settings.checkpoint.expiry_hours),
        clock=clock,
    )
    balance_probe = HttpBalanceProbe(http, remote.credits_path)
    dispatcher = Dispatcher(
        client,
        store,
        limiter=RateLimiter(RateLimitConfig.from_settings(settings.rate_limit), clock=clock),
        config=DispatchConfig.from_settings(settings.dispatch),
        clock=clock,
        balance_probe=balance_probe,
        status_probe=HttpStatusProbe(http, remote.rate_limit_status_path),
        on_progress=on_progress,
    )
    reader = HttpGridReader(
        http,
        remote.region_path,
        region_size=remote.region_size,
        max_attempts=remote.read_max_attempts,
    )
    sessions = SessionManager(dispatcher, store, reader=reader, payload_equal=colors_match)
    return Embedder(
        dispatcher=dispatcher,
        sessions=sessions,
        store=store,
        balance_probe=balance_probe,
        client=client,
        http=http,
        canvas_size=(remote.canvas_width, remote.canvas_height),
        resource_id=remote.base_url,
    )
