"""Dispatch engine: the dispatch loop, session recovery and reconciliation."""

from gridpush.engine.dispatcher import Dispatcher, ProgressCallback
from gridpush.engine.reconcile import PayloadComparator, find_missing, intended_state
from gridpush.engine.session import SessionManager

__all__ = [
    "Dispatcher",
    "PayloadComparator",
    "ProgressCallback",
    "SessionManager",
    "find_missing",
    "intended_state",
]
