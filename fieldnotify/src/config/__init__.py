"""
Configuration module for the field notification engine.

Provides centralized, environment-driven settings for quota, escalation,
sync, delivery and maintenance behaviour.
"""

from fieldnotify.src.config.settings import NotifySettings, get_settings

__all__ = [
    "NotifySettings",
    "get_settings",
]
