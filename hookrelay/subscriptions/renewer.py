"""Renew subscriptions that are close to expiring."""

from datetime import UTC, datetime, timedelta

import structlog

from hookrelay.dispatch.metrics import metrics
from hookrelay.graph.client import GraphClient
from hookrelay.subscriptions.config import SubscriptionSettings, subscription_settings
from hookrelay.subscriptions.schemas import RenewalDetail, RenewalReport, Subscription
from hookrelay.subscriptions.store import TrackingStore

logger = structlog.get_logger("hookrelay")


class SubscriptionRenewer:
    """Extends every live subscription whose remaining lifetime is below a threshold.

    The requested expiry is always the provider maximum from now minus a small
    safety margin, so a renewal can never exceed the provider limit. When a
    tracking store is supplied, subscriptions whose record has ``auto_renew``
    turned off are skipped.
    """

    def __init__(
        self,
        provider: GraphClient,
        store: TrackingStore | None = None,
        settings: SubscriptionSettings | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.settings = settings or subscription_settings

    async def _opted_out(self) -> set[str]:
        if self.store is None:
            return set()
        try:
            records = await self.store.list_records()
        except Exception as e:
            logger.warning("Tracking store unavailable; renewing all subscriptions", error=str(e))
            return set()
        return {record.subscription_id for record in records if not record.auto_renew}

    async def renew_expiring(
        self,
        threshold: timedelta | None = None,
        subscriptions: list[Subscription] | None = None,
    ) -> RenewalReport:
        threshold = threshold if threshold is not None else timedelta(hours=self.settings.renewal_threshold_hours)
        report = RenewalReport()

        if subscriptions is None:
            try:
                subscriptions = await self.provider.list_subscriptions()
            except Exception as e:
                logger.error("Failed to list subscriptions for renewal", error=str(e), exc_info=True)
                report.error = str(e)
                return report

        opted_out = await self._opted_out()
        now = datetime.now(UTC)

        for subscription in subscriptions:
            report.checked += 1
            remaining = subscription.expires_at - now

            if remaining >= threshold or subscription.id in opted_out:
                report.skipped += 1
                report.details.append(
                    RenewalDetail(
                        subscription_id=subscription.id,
                        action="skipped",
                        expires_at=subscription.expires_at,
                    )
                )
                continue

            new_expiry = self.provider.max_expiry()
            try:
                renewed = await self.provider.renew_subscription(subscription.id, new_expiry)
            except Exception as e:
                logger.error(
                    "Subscription renewal failed",
                    subscription_id=subscription.id,
                    error=str(e),
                )
                metrics.record_renewal("failed")
                report.failed += 1
                report.details.append(
                    RenewalDetail(
                        subscription_id=subscription.id,
                        action="failed",
                        expires_at=subscription.expires_at,
                        error=str(e),
                    )
                )
                continue

            metrics.record_renewal("renewed")
            report.renewed += 1
            report.details.append(
                RenewalDetail(
                    subscription_id=subscription.id,
                    action="renewed",
                    expires_at=subscription.expires_at,
                    new_expires_at=renewed.expires_at,
                )
            )
            logger.info(
                "Subscription renewed",
                subscription_id=subscription.id,
                remaining_hours=round(remaining.total_seconds() / 3600, 2),
                new_expires_at=renewed.expires_at.isoformat(),
            )

        logger.info(
            "Renewal pass completed",
            checked=report.checked,
            renewed=report.renewed,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report
