"""Tests for the orphaned subscription sweep."""

from datetime import UTC, datetime

import pytest

from conftest import make_subscription_row
from streamnotify.core.errors import ConflictError, TransportError
from streamnotify.models import Broadcaster, EventSubSubscription
from streamnotify.services import SubscriptionReconciler

CREATED = "2024-01-01T10:00:00.634234626Z"
CREATED_TS = datetime(2024, 1, 1, 10, 0, 0, tzinfo=UTC).timestamp()


def subscription(sub_id: str, **kwargs) -> EventSubSubscription:
    kwargs.setdefault("created_at", CREATED)
    return EventSubSubscription.model_validate(make_subscription_row(sub_id, **kwargs))


@pytest.fixture
def reconciler(twitch_api, repo) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        twitch_api, repo, grace_period=600, clock=lambda: CREATED_TS + 3_600
    )


@pytest.mark.unit
class TestSweep:
    @pytest.mark.asyncio
    async def test_deletes_unreferenced_subscription(self, reconciler, repo, twitch_api):
        repo.broadcasters[555] = Broadcaster(555, "Streamer", "", event_subscription_id="es1")
        twitch_api.list_subscriptions.return_value = [
            subscription("es1"),
            subscription("orphan", broadcaster_id=777),
        ]

        assert await reconciler.sweep() == ["orphan"]
        twitch_api.delete_subscription.assert_awaited_once_with("orphan")

    @pytest.mark.asyncio
    async def test_skips_foreign_callback(self, reconciler, twitch_api):
        twitch_api.list_subscriptions.return_value = [
            subscription("elsewhere", callback="https://other.example.com/hook"),
        ]

        assert await reconciler.sweep() == []
        twitch_api.delete_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_subscription_within_grace_period(self, repo, twitch_api):
        reconciler = SubscriptionReconciler(
            twitch_api, repo, grace_period=600, clock=lambda: CREATED_TS + 60
        )
        twitch_api.list_subscriptions.return_value = [subscription("fresh")]

        assert await reconciler.sweep() == []

    @pytest.mark.asyncio
    async def test_unparseable_created_at_is_kept(self, reconciler, twitch_api):
        twitch_api.list_subscriptions.return_value = [subscription("odd", created_at="yesterday")]

        assert await reconciler.sweep() == []

    @pytest.mark.asyncio
    async def test_delete_failure_does_not_stop_sweep(self, reconciler, twitch_api):
        twitch_api.list_subscriptions.return_value = [
            subscription("first", broadcaster_id=1),
            subscription("second", broadcaster_id=2),
        ]
        twitch_api.delete_subscription.side_effect = [TransportError("down"), None]

        assert await reconciler.sweep() == ["second"]
        assert twitch_api.delete_subscription.await_count == 2

    @pytest.mark.asyncio
    async def test_missing_subscription_is_recreated(self, reconciler, repo, twitch_api, caplog):
        repo.broadcasters[555] = Broadcaster(555, "Streamer", "", event_subscription_id="gone")

        assert await reconciler.sweep() == []
        assert repo.broadcasters[555].event_subscription_id == "es1"
        twitch_api.create_subscription.assert_awaited_once_with(555)
        assert "not found on Twitch" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_subscription_reuses_conflicting_remote(
        self, reconciler, repo, twitch_api
    ):
        repo.broadcasters[555] = Broadcaster(555, "Streamer", "", event_subscription_id="gone")
        twitch_api.create_subscription.side_effect = ConflictError("exists", status=409)
        twitch_api.find_subscription_by_user.return_value = subscription("es-other")

        await reconciler.sweep()

        assert repo.broadcasters[555].event_subscription_id == "es-other"

    @pytest.mark.asyncio
    async def test_failed_repair_keeps_row_for_next_sweep(
        self, reconciler, repo, twitch_api, caplog
    ):
        repo.broadcasters[555] = Broadcaster(555, "Streamer", "", event_subscription_id="gone")
        twitch_api.create_subscription.side_effect = TransportError("down")

        assert await reconciler.sweep() == []
        assert repo.broadcasters[555].event_subscription_id == "gone"
        assert "Could not resubscribe broadcaster 555" in caplog.text

    @pytest.mark.asyncio
    async def test_orphan_referenced_again_is_kept(self, reconciler, repo, twitch_api):
        async def register_meanwhile():
            repo.broadcasters[555] = Broadcaster(555, "Streamer", "", event_subscription_id="es1")
            return [subscription("es1")]

        # The row appears between the local read and the delete
        twitch_api.list_subscriptions.side_effect = register_meanwhile

        assert await reconciler.sweep() == []
        twitch_api.delete_subscription.assert_not_awaited()
