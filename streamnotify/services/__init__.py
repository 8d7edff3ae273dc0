"""Services layer - Business logic

This module provides service classes for the Twitch integration.
Services are initialized with their dependencies and accessed through dependency injection.
"""

from .bot_notifier import BotNotifier
from .event_dispatcher import EventDispatcher
from .reconciler import SubscriptionReconciler
from .subscription_service import SubscriptionService
from .token_cache import AppTokenCache
from .twitch_api import TwitchAPIClient
from .webhook_verifier import verify_signature

__all__ = [
    "AppTokenCache",
    "BotNotifier",
    "EventDispatcher",
    "SubscriptionReconciler",
    "SubscriptionService",
    "TwitchAPIClient",
    "verify_signature",
]
