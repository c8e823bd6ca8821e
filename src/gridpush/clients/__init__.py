"""Remote collaborators of the dispatcher.

Provides:
- RequestClient, Channel, RemoteStateReader, BalanceProbe, StatusProbe: contracts
- RacingRequestClient: first-settlement-wins client over several channels
- Http*: httpx transports for the grid service
- classify_failure_message: free-text error classification
"""

from gridpush.clients.base import BalanceProbe, Channel, RemoteStateReader, RequestClient, StatusProbe
from gridpush.clients.failure_classifier import FailureClassification, classify_failure_message, error_from_message
from gridpush.clients.http import (
    HttpBalanceProbe,
    HttpGridReader,
    HttpPlacementChannel,
    HttpStatusProbe,
    build_channels,
    build_http_client,
)
from gridpush.clients.racing import RacingRequestClient

__all__ = [
    "BalanceProbe",
    "Channel",
    "FailureClassification",
    "HttpBalanceProbe",
    "HttpGridReader",
    "HttpPlacementChannel",
    "HttpStatusProbe",
    "RacingRequestClient",
    "RemoteStateReader",
    "RequestClient",
    "StatusProbe",
    "build_channels",
    "build_http_client",
    "classify_failure_message",
    "error_from_message",
]
