"""
Gridpush: rate-limited, resumable dispatch of keyed writes to a shared grid.

Drains large ordered batches of idempotent writes against a remote grid
under strict throughput limits, checkpointing progress so interrupted runs
resume where they stopped and reconciling finished runs against the
authoritative remote state.
"""

__version__ = "0.3.0"
