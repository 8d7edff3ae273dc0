"""Subscription lifecycle: keeps Twitch EventSub in step with registrations.

Per broadcaster the remote subscription moves
``Absent -> Pending -> Active -> Absent``:

- creation happens inside the registration transaction, before commit, so a
  Twitch failure rolls the local write back;
- deletion happens after the local transaction commits, so a Twitch failure
  only leaves an orphaned remote subscription for the sweep to collect;
- a revocation from Twitch drops the local row without any remote call.

Remote create/reuse and remote delete for one broadcaster never overlap in
this process: both run under that broadcaster's lock, and a delete re-checks
that no row has picked the subscription up again.
"""

import logging

import asyncpg

from streamnotify.core.errors import ConflictError, InternalError, NotifierError, ValidationError
from streamnotify.core.locks import KeyedLocks
from streamnotify.models.notification import Broadcaster, Registration, ReleasedBroadcaster
from streamnotify.repositories.notification import NotificationRepository

from .twitch_api import TwitchAPIClient

logger = logging.getLogger(__name__)

# Shared by every service instance in the process
broadcaster_locks = KeyedLocks()


class SubscriptionService:
    """Registration API operations and the remote subscriptions behind them."""

    def __init__(self, repo: NotificationRepository, twitch_api: TwitchAPIClient) -> None:
        self.repo = repo
        self.twitch_api = twitch_api

    # ==================== Subscriptions ====================

    async def ensure_subscription(
        self, broadcaster_id: int, conn: asyncpg.Connection | None = None
    ) -> str:
        """Return the broadcaster's subscription id, creating it on Twitch if needed.

        The broadcaster row must exist; the id found or created is stored on it.
        Callers serialize on ``broadcaster_locks`` for this broadcaster.
        """
        broadcaster = await self.repo.get_broadcaster(broadcaster_id, conn)
        if broadcaster is None:
            raise InternalError(
                f"Broadcaster {broadcaster_id} has no row to hold a subscription",
                operation="ensure_subscription",
            )
        if broadcaster.has_subscription:
            return broadcaster.event_subscription_id  # type: ignore[return-value]

        subscription_id = await self._create_remote(broadcaster_id)
        await self.repo.set_subscription_id(broadcaster_id, subscription_id, conn)
        return subscription_id

    async def _create_remote(self, broadcaster_id: int) -> str:
        """Create the remote subscription, or reuse the one Twitch says exists."""
        try:
            return await self.twitch_api.create_subscription(broadcaster_id)
        except ConflictError:
            existing = await self.twitch_api.find_subscription_by_user(broadcaster_id)
            if existing is None:
                logger.error(
                    f"Twitch reported a conflicting subscription for {broadcaster_id} "
                    "but none could be found"
                )
                raise InternalError(
                    f"No existing subscription found for broadcaster {broadcaster_id}",
                    operation="ensure_subscription",
                ) from None
            logger.info(f"Reusing subscription {existing.id} for broadcaster {broadcaster_id}")
            return existing.id

    async def resubscribe(self, broadcaster_id: int, stale_id: str) -> str | None:
        """Replace a stored subscription id that no longer exists on Twitch.

        Returns the new id, or None when the row changed or went away meanwhile.
        """
        async with broadcaster_locks.hold(broadcaster_id):
            broadcaster = await self.repo.get_broadcaster(broadcaster_id)
            if broadcaster is None or broadcaster.event_subscription_id != stale_id:
                return None
            subscription_id = await self._create_remote(broadcaster_id)
            if not await self.repo.replace_subscription_id(broadcaster_id, stale_id, subscription_id):
                # Left unreferenced; the sweep collects it once past the grace period
                logger.warning(f"Broadcaster {broadcaster_id} changed while resubscribing")
                return None
        logger.warning(
            f"Broadcaster {broadcaster_id} resubscribed: {stale_id} -> {subscription_id}"
        )
        return subscription_id

    async def delete_if_unused(self, broadcaster_id: int, subscription_id: str) -> bool:
        """Delete a remote subscription unless a broadcaster row references it.

        Returns False when it was kept because a row picked it up again.
        """
        async with broadcaster_locks.hold(broadcaster_id):
            if await self.repo.subscription_in_use(subscription_id):
                logger.info(f"Subscription {subscription_id} is referenced again, keeping it")
                return False
            await self.twitch_api.delete_subscription(subscription_id)
            return True

    # ==================== Registration API ====================

    async def register(self, code: str, guild_id: int) -> Registration:
        """Register *guild_id* for the broadcaster who granted *code*."""
        user_token = await self.twitch_api.exchange_user_code(code)
        user = await self.twitch_api.fetch_user(user_token)

        async with broadcaster_locks.hold(user.id):
            async with self.repo.transaction() as conn:
                broadcaster = await self.repo.upsert_broadcaster(
                    Broadcaster(
                        id=user.id,
                        display_name=user.display_name,
                        avatar_url=user.profile_image_url,
                    ),
                    conn,
                )
                if await self.repo.registration_exists(guild_id, broadcaster.id, conn):
                    raise ConflictError(
                        f"Guild {guild_id} already registered broadcaster {broadcaster.id}",
                        operation="register",
                    )
                await self.ensure_subscription(broadcaster.id, conn)
                registration = await self.repo.insert_registration(guild_id, broadcaster.id, conn)

        logger.info(
            f"Registered guild {guild_id} for {broadcaster.display_name} ({broadcaster.id}), "
            f"registration={registration.id}"
        )
        return registration

    async def release_registration(self, registration_id: int) -> None:
        """Delete one registration; drop the subscription when it was the last."""
        async with self.repo.transaction() as conn:
            released = await self.repo.delete_registration(registration_id, conn)
            if released is None:
                raise ValidationError(
                    f"Registration {registration_id} not found",
                    operation="release_registration",
                )

        logger.info(f"Deleted registration {registration_id} ({released.broadcaster_id})")
        await self._delete_remote([released])

    async def release_guild(self, guild_id: int) -> list[str]:
        """Delete every registration of a guild.

        Returns the subscription ids that could not be deleted on Twitch.
        """
        async with self.repo.transaction() as conn:
            released = await self.repo.delete_guild_registrations(guild_id, conn)

        logger.info(f"Deleted registrations of guild {guild_id}, {len(released)} broadcaster(s) released")
        return await self._delete_remote(released)

    async def _delete_remote(self, released: list[ReleasedBroadcaster]) -> list[str]:
        """Delete remote subscriptions after the local commit.

        Failures are orphans: logged, returned, and left for the sweep.
        """
        orphaned: list[str] = []
        for item in released:
            if not item.event_subscription_id:
                continue
            try:
                await self.delete_if_unused(item.broadcaster_id, item.event_subscription_id)
            except NotifierError as e:
                logger.error(
                    f"Orphaned subscription {item.event_subscription_id} of broadcaster "
                    f"{item.broadcaster_id}: {e.context()}"
                )
                orphaned.append(item.event_subscription_id)
        return orphaned
