# src/gridpush/clients/http.py
"""HTTP transports for the remote grid.

Everything here sits at the boundary: HTTP status codes, transport errors
and free-text error bodies are translated into the gridpush taxonomy before
they reach the dispatcher.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Hashable, Mapping, Sequence
from json import JSONDecodeError
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from gridpush.clients.failure_classifier import error_from_message
from gridpush.contracts import (
    FailureKind,
    InsufficientResourceError,
    Operation,
    RateLimitedError,
    RateLimitHint,
    RemoteError,
    RemoteReadError,
    SendTimeoutError,
)
from gridpush.core.operations_io import normalize_color

if TYPE_CHECKING:
    from gridpush.core.config import RemoteSettings

logger = structlog.get_logger(__name__)


def coordinates(key: Hashable) -> tuple[int, int]:
    """Interpret an operation key as grid coordinates.

    Raises:
        ValueError: If the key is not an (x, y) pair of integers.
    """
    if not isinstance(key, tuple) or len(key) != 2 or not all(isinstance(c, int) and not isinstance(c, bool) for c in key):
        raise ValueError(f"Operation key must be an (x, y) pair of ints, got {key!r}")
    return key[0], key[1]


def build_http_client(settings: RemoteSettings, *, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """Create the shared httpx.Client for all grid endpoints.

    Args:
        settings: Remote service settings
        transport: Optional transport override (tests pass httpx.MockTransport)
    """
    headers = {"Accept": "application/json"}
    if settings.api_token is not None:
        headers["Authorization"] = f"Bearer {settings.api_token.get_secret_value()}"
    return httpx.Client(
        base_url=settings.base_url,
        headers=headers,
        timeout=settings.send_timeout_seconds,
        transport=transport,
    )


def _error_message(response: httpx.Response) -> str:
    """Extract the remote's error message from a response body."""
    try:
        body = response.json()
    except (JSONDecodeError, UnicodeDecodeError):
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        for field in ("error", "message", "detail"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
    return response.reason_phrase


class HttpPlacementChannel:
    """Channel that writes one cell through a JSON POST endpoint.

    Success is a 2xx reply whose body does not carry ``"success": false``.
    Failures are raised as SendError subclasses:
    - 402 -> InsufficientResourceError
    - 429 -> classified by message (burst vs. generic rate limit)
    - transport timeout -> SendTimeoutError
    - anything else -> classified by message, RemoteError by default
    """

    def __init__(self, client: httpx.Client, path: str = "/api/pixels", *, name: str | None = None) -> None:
        self._client = client
        self._path = path
        self.name = name or path

    def send(self, operation: Operation) -> None:
        try:
            x, y = coordinates(operation.key)
        except ValueError as e:
            raise RemoteError(f"Malformed operation: {e}") from e

        try:
            response = self._client.post(self._path, json={"x": x, "y": y, "color": operation.payload})
        except httpx.TimeoutException as e:
            raise SendTimeoutError(f"{self.name}: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteError(f"{self.name}: {type(e).__name__}: {e}") from e

        if response.is_success:
            self._check_body(response)
            return

        message = _error_message(response)
        if response.status_code == 402:
            raise InsufficientResourceError(message)
        error = error_from_message(message)
        if response.status_code == 429 and error.kind is FailureKind.OTHER:
            # A bare 429 without a recognizable message is still throttling
            raise RateLimitedError(message)
        raise error

    def _check_body(self, response: httpx.Response) -> None:
        try:
            body = response.json()
        except (JSONDecodeError, UnicodeDecodeError):
            return
        if isinstance(body, dict) and body.get("success") is False:
            raise error_from_message(_error_message(response))


def _is_retryable_read_error(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    return isinstance(error, httpx.HTTPStatusError) and error.response.status_code >= 500


class HttpGridReader:
    """Reads authoritative cell values, batched into rectangular region queries.

    Keys are grouped into ``region_size`` tiles; each tile is fetched once,
    clipped to the bounding box of the keys it holds. Transient failures
    (transport errors, 5xx) are retried with exponential backoff.
    """

    def __init__(
        self,
        client: httpx.Client,
        path: str = "/api/region",
        *,
        region_size: int = 100,
        max_attempts: int = 3,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if region_size <= 0:
            raise ValueError(f"region_size must be positive, got {region_size}")
        self._client = client
        self._path = path
        self._region_size = region_size
        self._max_attempts = max_attempts
        self._sleep = sleep
        self.queries = 0

    def read(self, keys: Sequence[Hashable]) -> Mapping[Hashable, Any]:
        """Fetch current colors for ``keys``.

        Raises:
            RemoteReadError: If a region cannot be read after retries.
        """
        tiles: dict[tuple[int, int], list[tuple[int, int]]] = defaultdict(list)
        for key in keys:
            x, y = coordinates(key)
            tiles[(x // self._region_size, y // self._region_size)].append((x, y))

        wanted = {coordinates(key) for key in keys}
        state: dict[Hashable, Any] = {}
        for tile_keys in tiles.values():
            min_x = min(x for x, _ in tile_keys)
            min_y = min(y for _, y in tile_keys)
            width = max(x for x, _ in tile_keys) - min_x + 1
            height = max(y for _, y in tile_keys) - min_y + 1
            for cell in self._fetch_region(min_x, min_y, width, height):
                try:
                    cell_key = (int(cell["x"]), int(cell["y"]))
                except (KeyError, TypeError, ValueError):
                    continue
                if cell_key in wanted:
                    state[cell_key] = normalize_color(cell.get("color"))
        return state

    def _fetch_region(self, x: int, y: int, width: int, height: int) -> list[dict[str, Any]]:
        retrying = Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential_jitter(initial=0.5, max=10.0),
            retry=retry_if_exception(_is_retryable_read_error),
            reraise=True,
            **({"sleep": self._sleep} if self._sleep is not None else {}),
        )
        params = {"x": x, "y": y, "width": width, "height": height}
        try:
            for attempt in retrying:
                with attempt:
                    self.queries += 1
                    response = self._client.get(self._path, params=params)
                    response.raise_for_status()
                    body = response.json()
        except (httpx.HTTPError, JSONDecodeError) as e:
            raise RemoteReadError(f"Could not read region {params}: {e}") from e

        pixels = body.get("pixels") if isinstance(body, dict) else body
        if not isinstance(pixels, list):
            raise RemoteReadError(f"Malformed region response for {params}")
        return [cell for cell in pixels if isinstance(cell, dict)]


class HttpBalanceProbe:
    """Reads the remaining write budget. Failures degrade to None."""

    def __init__(self, client: httpx.Client, path: str = "/api/credits") -> None:
        self._client = client
        self._path = path

    def fetch_balance(self) -> int | None:
        try:
            response = self._client.get(self._path)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, JSONDecodeError) as e:
            logger.warning("Could not read balance", error=str(e))
            return None
        value = body.get("credits") if isinstance(body, dict) else body
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            return None
        try:
            return int(value)
        except ValueError:
            return None


class HttpStatusProbe:
    """Reads the remote's admission-policy hint. Failures degrade to None."""

    def __init__(self, client: httpx.Client, path: str = "/api/rate-limit-status") -> None:
        self._client = client
        self._path = path

    def fetch_hint(self) -> RateLimitHint | None:
        try:
            response = self._client.get(self._path)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, JSONDecodeError) as e:
            logger.warning("Could not read rate limit status", error=str(e))
            return None
        if not isinstance(body, dict) or not isinstance(body.get("tier"), str):
            return None
        return RateLimitHint(
            tier=body["tier"],
            burst_quota=_optional_int(body.get("burst_limit")),
            per_minute=_optional_int(body.get("per_minute")),
        )


def _optional_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def build_channels(client: httpx.Client, settings: RemoteSettings) -> list[HttpPlacementChannel]:
    """One placement channel per configured path, primary first."""
    return [HttpPlacementChannel(client, path) for path in settings.placement_paths]


__all__ = [
    "HttpBalanceProbe",
    "HttpGridReader",
    "HttpPlacementChannel",
    "HttpStatusProbe",
    "build_channels",
    "build_http_client",
    "coordinates",
]
