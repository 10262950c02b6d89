"""Core module for configuration and utilities."""

from voicebilling.core.config import settings
from voicebilling.core.database import Base, get_session_factory

__all__ = [
    "settings",
    "Base",
    "get_session_factory",
]
