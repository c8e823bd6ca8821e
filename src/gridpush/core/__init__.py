"""Core subsystems: configuration, logging, clocks, rate limiting and checkpoints."""

from gridpush.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from gridpush.core.config import GridpushSettings, load_settings
from gridpush.core.logging import configure_logging, get_logger, session_context

__all__ = [
    "DEFAULT_CLOCK",
    "Clock",
    "GridpushSettings",
    "MockClock",
    "SystemClock",
    "configure_logging",
    "get_logger",
    "load_settings",
    "session_context",
]
