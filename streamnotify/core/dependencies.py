"""Dependency injection utilities for FastAPI"""

import logging

import asyncpg
from fastapi import Depends, HTTPException

from streamnotify.core.cache import MessageIdCache
from streamnotify.core.config import get_settings
from streamnotify.core.database import get_database_manager
from streamnotify.repositories import NotificationRepository
from streamnotify.services import (
    BotNotifier,
    EventDispatcher,
    SubscriptionReconciler,
    SubscriptionService,
    TwitchAPIClient,
)

logger = logging.getLogger(__name__)


# ============================================
# Shared clients
# ============================================


_twitch_api: TwitchAPIClient | None = None
_bot_notifier: BotNotifier | None = None
_message_cache: MessageIdCache | None = None


def get_twitch_api() -> TwitchAPIClient:
    """Get shared TwitchAPIClient singleton (connection reuse + token cache)."""
    global _twitch_api
    if _twitch_api is None:
        settings = get_settings()
        _twitch_api = TwitchAPIClient(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            redirect_url=settings.redirect_url,
            callback_url=settings.callback_url,
            eventsub_secret=settings.eventsub_secret,
            timeout=settings.http_timeout,
            token_refresh_margin=settings.token_refresh_margin,
            token_lock_timeout=settings.token_lock_timeout,
        )
    return _twitch_api


async def close_twitch_api() -> None:
    """Close the shared TwitchAPIClient. Call on app shutdown."""
    global _twitch_api
    if _twitch_api is not None:
        await _twitch_api.close()
        _twitch_api = None


def get_bot_notifier() -> BotNotifier:
    """Get shared BotNotifier singleton (owns pending deliveries)."""
    global _bot_notifier
    if _bot_notifier is None:
        settings = get_settings()
        _bot_notifier = BotNotifier(settings.bot_url, timeout=settings.http_timeout)
    return _bot_notifier


async def close_bot_notifier() -> None:
    """Drain pending deliveries and close the BotNotifier. Call on app shutdown."""
    global _bot_notifier
    if _bot_notifier is not None:
        await _bot_notifier.close()
        _bot_notifier = None


def get_message_cache() -> MessageIdCache:
    """Get the process-wide cache of processed EventSub message ids."""
    global _message_cache
    if _message_cache is None:
        _message_cache = MessageIdCache(ttl=get_settings().message_dedup_ttl)
    return _message_cache


# ============================================
# Database
# ============================================


def _current_pool() -> asyncpg.Pool | None:
    try:
        db_manager = get_database_manager()
    except RuntimeError:
        return None
    return db_manager._pool


def get_db_pool() -> asyncpg.Pool:
    pool = _current_pool()
    if pool is None:
        raise HTTPException(status_code=503, detail="Database not ready")
    return pool


def get_notification_repository(
    pool: asyncpg.Pool = Depends(get_db_pool),
) -> NotificationRepository:
    return NotificationRepository(pool)


def get_optional_notification_repository() -> NotificationRepository | None:
    """Repository when the pool is up, else None (the webhook must not fail early)."""
    pool = _current_pool()
    return NotificationRepository(pool) if pool is not None else None


# ============================================
# Service Dependencies
# ============================================


def get_subscription_service(
    repo: NotificationRepository = Depends(get_notification_repository),
    twitch_api: TwitchAPIClient = Depends(get_twitch_api),
) -> SubscriptionService:
    """Get SubscriptionService instance (dependency injection)"""
    return SubscriptionService(repo, twitch_api)


def get_event_dispatcher(
    twitch_api: TwitchAPIClient = Depends(get_twitch_api),
    notifier: BotNotifier = Depends(get_bot_notifier),
    message_cache: MessageIdCache = Depends(get_message_cache),
    repo: NotificationRepository | None = Depends(get_optional_notification_repository),
) -> EventDispatcher:
    """Get EventDispatcher instance (dependency injection)"""
    return EventDispatcher(twitch_api, notifier, message_cache, repo)


def get_reconciler(pool: asyncpg.Pool) -> SubscriptionReconciler:
    """Build the orphan sweep for the background loop."""
    return SubscriptionReconciler(
        get_twitch_api(),
        NotificationRepository(pool),
        grace_period=get_settings().orphan_grace_period,
    )
