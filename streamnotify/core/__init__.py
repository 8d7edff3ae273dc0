"""Core modules for the notification service."""

from .config import Settings, get_settings
from .errors import (
    AuthError,
    ConcurrencyError,
    ConflictError,
    InternalError,
    NotifierError,
    PersistenceError,
    RemoteApiError,
    TransportError,
    ValidationError,
)
from .logging import setup_logging

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    # Setup functions
    "setup_logging",
    # Errors
    "NotifierError",
    "TransportError",
    "RemoteApiError",
    "AuthError",
    "ConflictError",
    "PersistenceError",
    "ValidationError",
    "ConcurrencyError",
    "InternalError",
]
