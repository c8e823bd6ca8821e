"""Reconciliation of intended operations against authoritative remote state."""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from gridpush.clients.base import RemoteStateReader
from gridpush.contracts import Operation, collapse_duplicate_keys

logger = structlog.get_logger(__name__)

PayloadComparator = Callable[[Any, Any], bool]
"""Called as ``payload_equal(remote_value, intended_payload)``."""


def intended_state(operations: Iterable[Operation]) -> list[Operation]:
    """The state a batch is meant to leave behind: the last write per key wins."""
    return collapse_duplicate_keys(operations)


def find_missing(
    operations: Iterable[Operation],
    reader: RemoteStateReader,
    *,
    payload_equal: PayloadComparator | None = None,
) -> list[Operation]:
    """Return the operations whose key does not hold the intended payload remotely.

    Keys absent from the reader's answer count as missing. The result keeps
    submission order and holds at most one operation per key.

    Raises:
        RemoteReadError: Propagated from the reader; nothing is guessed.
    """
    intended = intended_state(operations)
    if not intended:
        return []

    equal = payload_equal or operator.eq
    remote = reader.read([op.key for op in intended])
    missing = [op for op in intended if op.key not in remote or not equal(remote[op.key], op.payload)]
    logger.info("Reconciled against remote state", checked=len(intended), missing=len(missing))
    return missing
