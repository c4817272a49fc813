"""
Shared utilities for the notification engine.

- clock: Injectable time source and timezone helpers
- scheduler: Periodic background task runner
- logging_config: Structured logging setup
"""

from fieldnotify.src.utils.clock import Clock, SystemClock, FrozenClock

__all__ = [
    "Clock",
    "SystemClock",
    "FrozenClock",
]
