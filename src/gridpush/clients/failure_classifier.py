"""Deterministic classification of free-text remote errors.

The remote reports most failures as a message string. The dispatcher needs
a FailureKind to pick its cooldown, so messages are matched against ordered
pattern groups: the first group with a match wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from gridpush.contracts import SEND_ERROR_TYPES, FailureKind, SendError

_BURST_LIMIT_PATTERNS: tuple[str, ...] = (
    "burst limit",
    "burst_limit",
    "burst quota",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate-limit",
    "ratelimit",
    "rate_limit",
    "too many requests",
    "throttl",
    "slow down",
)
_INSUFFICIENT_RESOURCE_PATTERNS: tuple[str, ...] = (
    "insufficient",
    "credit",
    "balance",
    "payment required",
    "out of funds",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline exceeded",
)
# Catch-all throttling words. Matched at the start of a word only, so
# "generate" and "unlimited" stay unmatched while "limited" and "rates" match.
_GENERIC_LIMIT_WORDS: tuple[str, ...] = (
    "limit",
    "rate",
)
_GENERIC_LIMIT_RES: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (word, re.compile(rf"\b{re.escape(word)}")) for word in _GENERIC_LIMIT_WORDS
)


@dataclass(frozen=True, slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_pattern: str | None

    def to_error(self, message: str) -> SendError:
        return SEND_ERROR_TYPES[self.kind](message)


def classify_failure_message(message: str) -> FailureClassification:
    """Classify a remote error message.

    Order: burst limits, explicit rate limits, insufficient resource,
    timeouts, then the bare words "limit" and "rate". Burst comes first
    because "burst limit" also names a limit. Explicit rate limits precede
    credits because throttling replies may mention the remaining balance.
    The bare words come last, so "Credit limit reached" is a budget failure
    rather than throttling.
    """
    haystack = message.lower()

    for kind, patterns in (
        (FailureKind.BURST_LIMITED, _BURST_LIMIT_PATTERNS),
        (FailureKind.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
        (FailureKind.INSUFFICIENT_RESOURCE, _INSUFFICIENT_RESOURCE_PATTERNS),
        (FailureKind.TIMEOUT, _TIMEOUT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(kind=kind, matched_pattern=pattern)

    for word, regex in _GENERIC_LIMIT_RES:
        if regex.search(haystack):
            return FailureClassification(kind=FailureKind.RATE_LIMITED, matched_pattern=word)

    return FailureClassification(kind=FailureKind.OTHER, matched_pattern=None)


def error_from_message(message: str) -> SendError:
    """Build the SendError subclass matching a remote error message."""
    return classify_failure_message(message).to_error(message)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
