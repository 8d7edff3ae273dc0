"""Repository layer for the notification registry."""

from .notification import NotificationRepository

__all__ = [
    "NotificationRepository",
]
