"""Three-way reconciliation of live subscriptions against the tracking store."""

from datetime import datetime
from typing import Any

import structlog

from hookrelay.dispatch.metrics import metrics
from hookrelay.graph.client import GraphClient, split_list_resource
from hookrelay.routing.directives import parse
from hookrelay.subscriptions.schemas import (
    ResourceMetadata,
    Subscription,
    SyncReport,
    TrackingRecord,
    TrackingStatus,
)
from hookrelay.subscriptions.store import TrackingStore

logger = structlog.get_logger("hookrelay")


def placeholder_metadata(resource: str) -> ResourceMetadata:
    parts = split_list_resource(resource)
    if parts is None:
        return ResourceMetadata(display_name=resource, kind="List")
    site, list_id = parts
    return ResourceMetadata(
        display_name=f"List {list_id}",
        kind="List",
        site_url=f"sites/{site}",
        list_id=list_id,
    )


def same_second(left: datetime | None, right: datetime | None) -> bool:
    """Compare timestamps at whole-second precision, as list DateTime columns store them."""
    if left is None or right is None:
        return left is right
    return left.replace(microsecond=0) == right.replace(microsecond=0)


def directive_fields(client_state: str | None) -> dict[str, Any]:
    """Locally owned fields derived from a clientState string."""
    directives = parse(client_state)
    return {
        "client_state": client_state or "",
        "forwarding_url": directives.forward or "",
        "is_proxy": directives.is_proxy,
    }


class Reconciler:
    """Aligns the tracking store with the authoritative live subscription set.

    Live subscriptions missing from the store get a new Active record; present
    ones get their upstream-owned fields refreshed while the locally owned
    fields (clientState, forwardingUrl, isProxy, notificationCount,
    lastForwardedAt) are left exactly as stored. Records whose subscription is
    gone are marked Deleted and never touched again unless the id reappears.
    """

    def __init__(self, provider: GraphClient, store: TrackingStore) -> None:
        self.provider = provider
        self.store = store

    async def sync(self) -> SyncReport:
        """Fetch both sides and reconcile them."""
        try:
            live = await self.provider.list_subscriptions()
            records = await self.store.list_records()
        except Exception as e:
            # without both sides every record would look orphaned
            logger.error("Reconciliation aborted; could not load state", error=str(e), exc_info=True)
            return SyncReport(errors=[{"error": str(e)}])
        return await self.reconcile(live, records)

    async def describe(self, resource: str) -> ResourceMetadata:
        try:
            return await self.provider.describe_resource(resource)
        except Exception as e:
            logger.warning("Could not resolve resource metadata; using placeholder", resource=resource, error=str(e))
            return placeholder_metadata(resource)

    async def reconcile(
        self,
        live_subscriptions: list[Subscription],
        tracking_records: list[TrackingRecord],
    ) -> SyncReport:
        report = SyncReport()
        by_subscription: dict[str, TrackingRecord] = {}
        for record in tracking_records:
            by_subscription.setdefault(record.subscription_id, record)

        live_ids = set()
        for subscription in live_subscriptions:
            live_ids.add(subscription.id)
            record = by_subscription.get(subscription.id)
            try:
                if record is None:
                    await self.create_record(subscription)
                    report.created += 1
                    continue

                fields = await self.upstream_changes(subscription, record)
                if not fields:
                    report.unchanged += 1
                    continue
                await self.store.patch_record(record.record_id, fields)
                report.updated += 1
                logger.info(
                    "Tracking record updated",
                    subscription_id=subscription.id,
                    fields=sorted(fields),
                )
            except Exception as e:
                logger.error("Failed to reconcile subscription", subscription_id=subscription.id, error=str(e))
                report.errors.append({"subscriptionId": subscription.id, "error": str(e)})

        for record in tracking_records:
            if record.subscription_id in live_ids or record.is_deleted:
                continue
            try:
                await self.store.patch_record(record.record_id, {"status": TrackingStatus.DELETED})
                report.deleted_marked += 1
                logger.info("Tracking record marked deleted", subscription_id=record.subscription_id)
            except Exception as e:
                logger.error("Failed to mark tracking record deleted", subscription_id=record.subscription_id, error=str(e))
                report.errors.append({"subscriptionId": record.subscription_id, "error": str(e)})

        metrics.record_reconcile_changes("created", report.created)
        metrics.record_reconcile_changes("updated", report.updated)
        metrics.record_reconcile_changes("deleted", report.deleted_marked)
        logger.info(
            "Reconciliation completed",
            created=report.created,
            updated=report.updated,
            deleted_marked=report.deleted_marked,
            unchanged=report.unchanged,
            errors=len(report.errors),
        )
        return report

    async def create_record(self, subscription: Subscription) -> TrackingRecord:
        """Mirror ``subscription`` as a new Active record with zeroed counters."""
        metadata = await self.describe(subscription.resource)
        record = TrackingRecord(
            subscription_id=subscription.id,
            resource=subscription.resource,
            resource_display_name=metadata.display_name,
            resource_kind=metadata.kind,
            site_url=metadata.site_url,
            list_id=metadata.list_id,
            change_type=subscription.change_type,
            notification_url=subscription.notification_url,
            expires_at=subscription.expires_at,
            status=TrackingStatus.ACTIVE,
            **directive_fields(subscription.client_state),
        )
        created = await self.store.create_record(record)
        logger.info("Tracking record created for live subscription", subscription_id=subscription.id)
        return created

    def _needs_metadata(self, subscription: Subscription, record: TrackingRecord) -> bool:
        if record.resource != subscription.resource:
            return True
        if not record.resource_display_name:
            return True
        return record.resource_display_name == placeholder_metadata(subscription.resource).display_name

    async def upstream_changes(self, subscription: Subscription, record: TrackingRecord) -> dict[str, Any]:
        """Fields to patch on ``record``; never includes locally owned values once set."""
        fields: dict[str, Any] = {}
        if record.is_deleted:
            # same id seen again: reuse the record, keep its counters
            fields["status"] = TrackingStatus.ACTIVE

        upstream = {
            "resource": subscription.resource,
            "change_type": subscription.change_type,
            "notification_url": subscription.notification_url,
            "expires_at": subscription.expires_at,
        }
        for key, value in upstream.items():
            current = getattr(record, key)
            if key == "expires_at":
                if not same_second(current, value):
                    fields[key] = value
            elif current != value:
                fields[key] = value

        if self._needs_metadata(subscription, record):
            metadata = await self.describe(subscription.resource)
            resolved = {
                "resource_display_name": metadata.display_name,
                "resource_kind": metadata.kind,
                "site_url": metadata.site_url,
                "list_id": metadata.list_id,
            }
            for key, value in resolved.items():
                if value and getattr(record, key) != value:
                    fields[key] = value

        # locally owned values are filled from upstream only while still unset
        if not record.client_state and subscription.client_state:
            fields.update(directive_fields(subscription.client_state))

        return fields
