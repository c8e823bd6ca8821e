"""Operation and Session contracts.

An Operation is one idempotent keyed write. A Session is one dispatch
run over an ordered batch of operations, from submission to completion
or abandonment.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class Operation:
    """One idempotent write intended for the remote grid.

    Attributes:
        key: Comparable identity of the target cell, e.g. an (x, y) pair.
        payload: Opaque value written to the cell, e.g. "#FF0000".
    """

    key: Hashable
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Operation:
        return cls(key=data["key"], payload=data["payload"])


def new_session_id() -> str:
    """Generate a session id that is unique across restarts.

    Millisecond wall-clock prefix keeps ids roughly ordered; the random
    suffix avoids collisions between sessions started in the same tick.
    """
    return f"embed_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def collapse_duplicate_keys(operations: Iterable[Operation]) -> list[Operation]:
    """Keep only the last operation for each key.

    The surviving operation keeps the position of its last occurrence, so
    relative submission order of the survivors is unchanged.
    """
    ops = list(operations)
    last_index = {op.key: i for i, op in enumerate(ops)}
    return [op for i, op in enumerate(ops) if last_index[op.key] == i]


@dataclass
class Session:
    """State of one dispatch run.

    ``pending_queue`` only ever loses operations from the head (confirmed or
    abandoned) or, under the requeue policy, moves a failed head operation to
    the tail. ``original_operations`` is never mutated and is what
    reconciliation compares remote state against.

    Queue conservation: completed_count + dropped_count + len(pending_queue)
    == len(original_operations). error_count counts every failed send, which
    equals dropped_count under the drop policy.
    """

    session_id: str
    original_operations: tuple[Operation, ...]
    pending_queue: deque[Operation]
    completed_count: int = 0
    error_count: int = 0
    dropped_count: int = 0
    active: bool = False
    last_checkpoint_time: datetime | None = None
    resource_id: str | None = None
    retry_counts: dict[Hashable, int] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        operations: Iterable[Operation],
        *,
        resource_id: str | None = None,
        session_id: str | None = None,
    ) -> Session:
        """Create a fresh session whose queue holds every operation."""
        original = tuple(operations)
        return cls(
            session_id=session_id or new_session_id(),
            original_operations=original,
            pending_queue=deque(original),
            resource_id=resource_id,
        )

    @property
    def remaining(self) -> int:
        return len(self.pending_queue)

    @property
    def original_count(self) -> int:
        return len(self.original_operations)

    def is_conserved(self) -> bool:
        """Whether every original operation is accounted for exactly once."""
        return self.completed_count + self.dropped_count + self.remaining == self.original_count

    def to_dict(self, *, timestamp: datetime | None = None) -> dict[str, Any]:
        """Serializable form used by the checkpoint store.

        Args:
            timestamp: Overrides last_checkpoint_time in the output, so the
                store can stamp a record before committing it.
        """
        return {
            "session_id": self.session_id,
            "resource_id": self.resource_id,
            "original_operations": [op.to_dict() for op in self.original_operations],
            "pending_queue": [op.to_dict() for op in self.pending_queue],
            "completed_count": self.completed_count,
            "error_count": self.error_count,
            "dropped_count": self.dropped_count,
            "active": self.active,
            "last_checkpoint_time": timestamp if timestamp is not None else self.last_checkpoint_time,
            # JSON objects only take string keys, and operation keys are tuples
            "retry_counts": [[key, count] for key, count in self.retry_counts.items()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Session:
        return cls(
            session_id=data["session_id"],
            resource_id=data["resource_id"],
            original_operations=tuple(Operation.from_dict(op) for op in data["original_operations"]),
            pending_queue=deque(Operation.from_dict(op) for op in data["pending_queue"]),
            completed_count=data["completed_count"],
            error_count=data["error_count"],
            dropped_count=data["dropped_count"],
            active=data["active"],
            last_checkpoint_time=data["last_checkpoint_time"],
            retry_counts={key: count for key, count in data["retry_counts"]},
        )
