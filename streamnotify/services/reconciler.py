"""Periodic reconciliation of EventSub subscriptions with the registry.

Remote deletes run after the local commit, so a failed delete leaves a
subscription on Twitch that no broadcaster row references. The sweep lists
our stream.online subscriptions and deletes those orphans. A subscription
younger than the grace period is skipped: it may belong to a registration
whose transaction has not committed yet.

The other direction is repaired too: a broadcaster row whose subscription is
gone from Twitch gets a new one, otherwise its guilds would never be notified.
"""

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from streamnotify.core.errors import NotifierError
from streamnotify.models.notification import Broadcaster
from streamnotify.models.twitch import EventSubSubscription
from streamnotify.repositories.notification import NotificationRepository

from .subscription_service import SubscriptionService
from .twitch_api import TwitchAPIClient

logger = logging.getLogger(__name__)


def _created_at(subscription: EventSubSubscription) -> float | None:
    # Twitch sends nanosecond precision ("2024-01-01T10:11:12.634234626Z")
    try:
        parsed = datetime.strptime(subscription.created_at[:19], "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC).timestamp()


class SubscriptionReconciler:
    """Deletes orphaned remote subscriptions and replaces missing ones."""

    def __init__(
        self,
        twitch_api: TwitchAPIClient,
        repo: NotificationRepository,
        *,
        grace_period: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.twitch_api = twitch_api
        self.repo = repo
        self.subscriptions = SubscriptionService(repo, twitch_api)
        self.grace_period = grace_period
        self._clock = clock

    def _is_orphan(self, subscription: EventSubSubscription, known: set[str], now: float) -> bool:
        if subscription.id in known:
            return False
        if subscription.transport.callback != self.twitch_api.callback_url:
            return False
        created = _created_at(subscription)
        return created is not None and now - created >= self.grace_period

    async def sweep(self) -> list[str]:
        """Run one sweep and return the ids of the subscriptions deleted."""
        # Local first: every id committed before this read already exists remotely
        broadcasters = await self.repo.list_broadcasters()
        remote = await self.twitch_api.list_subscriptions()
        known = {b.event_subscription_id for b in broadcasters if b.event_subscription_id}

        now = self._clock()
        deleted: list[str] = []
        for subscription in remote:
            if not self._is_orphan(subscription, known, now):
                continue
            broadcaster_id = subscription.condition.broadcaster_user_id
            try:
                if await self.subscriptions.delete_if_unused(broadcaster_id, subscription.id):
                    deleted.append(subscription.id)
            except NotifierError as e:
                logger.error(f"Sweep could not delete {subscription.id}: {e.context()}")

        remote_ids = {s.id for s in remote}
        missing = [
            b
            for b in broadcasters
            if b.event_subscription_id and b.event_subscription_id not in remote_ids
        ]
        repaired = 0
        for broadcaster in missing:
            if await self._repair(broadcaster):
                repaired += 1

        logger.info(
            f"Subscription sweep: {len(remote)} remote, {len(known)} local, "
            f"{len(deleted)} deleted, {repaired}/{len(missing)} repaired"
        )
        return deleted

    async def _repair(self, broadcaster: Broadcaster) -> bool:
        stale_id = broadcaster.event_subscription_id or ""
        logger.warning(
            f"Subscription {stale_id} of broadcaster {broadcaster.id} not found on Twitch"
        )
        try:
            return await self.subscriptions.resubscribe(broadcaster.id, stale_id) is not None
        except NotifierError as e:
            logger.error(f"Could not resubscribe broadcaster {broadcaster.id}: {e.context()}")
            return False
