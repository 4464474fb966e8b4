"""Tests for subscription renewal."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from hookrelay.errors import UpstreamError
from hookrelay.subscriptions.renewer import SubscriptionRenewer
from hookrelay.subscriptions.schemas import Subscription, TrackingRecord


def subscription(subscription_id, hours_left):
    return Subscription(
        id=subscription_id,
        resource="sites/a/lists/b",
        change_type="updated",
        notification_url="https://relay.example/webhook",
        expires_at=datetime.now(UTC) + timedelta(hours=hours_left),
    )


@pytest.fixture
def provider(subscription_config):
    max_expiry = datetime.now(UTC) + timedelta(hours=72) - timedelta(seconds=60)
    provider = Mock()
    provider.max_expiry = Mock(return_value=max_expiry)
    provider.list_subscriptions = AsyncMock(return_value=[
        subscription("soon", 2),
        subscription("later", 60),
    ])

    async def renew(subscription_id, new_expiry):
        return subscription(subscription_id, 0).model_copy(update={"expires_at": new_expiry})

    provider.renew_subscription = AsyncMock(side_effect=renew)
    return provider


class TestRenewExpiring:
    """Threshold handling and per-item outcomes."""

    @pytest.mark.asyncio
    async def test_renews_only_below_threshold(self, provider, subscription_config):
        renewer = SubscriptionRenewer(provider, settings=subscription_config)

        report = await renewer.renew_expiring(timedelta(hours=24))

        assert (report.checked, report.renewed, report.skipped, report.failed) == (2, 1, 1, 0)
        provider.renew_subscription.assert_awaited_once()
        assert provider.renew_subscription.call_args[0][0] == "soon"

    @pytest.mark.asyncio
    async def test_new_expiry_within_provider_maximum(self, provider, subscription_config):
        renewer = SubscriptionRenewer(provider, settings=subscription_config)

        report = await renewer.renew_expiring(timedelta(hours=24))

        renewed = next(detail for detail in report.details if detail.action == "renewed")
        assert renewed.new_expires_at <= datetime.now(UTC) + timedelta(hours=72)

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_batch(self, provider, subscription_config):
        provider.list_subscriptions.return_value = [subscription("a", 1), subscription("b", 1)]

        async def renew(subscription_id, new_expiry):
            if subscription_id == "a":
                raise UpstreamError("Graph PATCH failed", status_code=404)
            return subscription(subscription_id, 71)

        provider.renew_subscription.side_effect = renew
        renewer = SubscriptionRenewer(provider, settings=subscription_config)

        report = await renewer.renew_expiring(timedelta(hours=24))

        assert report.failed == 1
        assert report.renewed == 1
        failed = next(detail for detail in report.details if detail.action == "failed")
        assert failed.subscription_id == "a"
        assert "404" in failed.error

    @pytest.mark.asyncio
    async def test_listing_failure_reported(self, provider, subscription_config):
        provider.list_subscriptions.side_effect = UpstreamError("Graph unavailable")
        renewer = SubscriptionRenewer(provider, settings=subscription_config)

        report = await renewer.renew_expiring()

        assert report.checked == 0
        assert report.error == "Graph unavailable"

    @pytest.mark.asyncio
    async def test_auto_renew_disabled_skipped(self, provider, subscription_config, memory_store):
        store = memory_store([TrackingRecord(subscription_id="soon", auto_renew=False)])
        renewer = SubscriptionRenewer(provider, store, subscription_config)

        report = await renewer.renew_expiring(timedelta(hours=24))

        assert report.renewed == 0
        assert report.skipped == 2
