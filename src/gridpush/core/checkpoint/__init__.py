"""Checkpoint subsystem for crash recovery.

Provides:
- CheckpointStore: Single-slot durable session snapshots with expiry
- checkpoint_dumps/checkpoint_loads: Type-preserving JSON serialization
"""

from gridpush.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads
from gridpush.core.checkpoint.store import DEFAULT_EXPIRY, DEFAULT_SLOT, CheckpointStore

__all__ = [
    "DEFAULT_EXPIRY",
    "DEFAULT_SLOT",
    "CheckpointStore",
    "checkpoint_dumps",
    "checkpoint_loads",
]
