"""Notification dispatcher: validate, deduplicate and fan out change events."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from fastapi import BackgroundTasks

from hookrelay.dispatch.config import DispatchSettings, dispatch_settings
from hookrelay.dispatch.dedup import LoopGuard
from hookrelay.dispatch.forwarder import Forwarder
from hookrelay.dispatch.metrics import metrics
from hookrelay.dispatch.schemas import DispatchReport, ForwardResult, ItemOutcome, Notification, parse_batch
from hookrelay.errors import UpstreamError
from hookrelay.queue.client import WorkQueueClient
from hookrelay.routing.changes import ChangeDetector, ChangeSet
from hookrelay.routing.directives import Directives, parse
from hookrelay.routing.items import ItemResolver
from hookrelay.routing.processors import processor_registry
from hookrelay.routing.registry import ProcessorContext, ProcessorRegistry
from hookrelay.subscriptions.schemas import TrackingRecord
from hookrelay.subscriptions.store import TrackingStore

logger = structlog.get_logger("hookrelay")


@dataclass
class TrackingUpdate:
    """Best-effort tracking store update applied after the response."""

    record: TrackingRecord
    notifications: int = 0
    last_forwarded_at: datetime | None = None


class _ItemContext:
    """Resolves the item (and its changes) once per notification, on demand."""

    def __init__(self, dispatcher: "NotificationDispatcher", notification: Notification) -> None:
        self.dispatcher = dispatcher
        self.notification = notification
        self._item_task: asyncio.Task | None = None
        self._changes: ChangeSet | None = None
        self._changes_done = False

    async def item(self) -> dict[str, Any] | None:
        if self._item_task is None:
            self._item_task = asyncio.ensure_future(
                self.dispatcher.item_resolver.resolve(
                    self.notification.resource,
                    self.notification.resource_data,
                )
            )
        return await self._item_task

    async def changes(self) -> ChangeSet | None:
        item = await self.item()
        if not self._changes_done:
            self._changes_done = True
            if item is not None:
                self._changes = self.dispatcher.change_detector.detect(self.notification.resource, item)
        return self._changes


class NotificationDispatcher:
    """Runs one inbound batch through dedup and the dispatch branches.

    Branches per novel notification run concurrently and independently:
    forward (when a ``forward`` directive is present) and queue dispatch (when
    the directives request engine-routed processing). Tracking store updates
    (notification counter, last-forwarded timestamp) are returned as side
    tasks and applied after the response.
    """

    def __init__(
        self,
        store: TrackingStore,
        item_resolver: ItemResolver,
        queue_client: WorkQueueClient,
        forwarder: Forwarder | None = None,
        registry: ProcessorRegistry | None = None,
        loop_guard: LoopGuard | None = None,
        change_detector: ChangeDetector | None = None,
        settings: DispatchSettings | None = None,
    ) -> None:
        self.settings = settings or dispatch_settings
        self.store = store
        self.item_resolver = item_resolver
        self.queue_client = queue_client
        self.forwarder = forwarder or Forwarder(self.settings)
        self.registry = registry or processor_registry
        self.loop_guard = loop_guard or LoopGuard(
            window_seconds=self.settings.dedup_window_seconds,
            max_entries=self.settings.dedup_max_entries,
        )
        self.change_detector = change_detector or ChangeDetector(self.settings.change_cache_size)

    async def dispatch_batch(
        self,
        payload: Any,
        background: BackgroundTasks | None = None,
    ) -> DispatchReport:
        """Dispatch a notification batch.

        Raises ``ValidationError`` for a malformed payload. Every per-item
        problem is folded into the returned report. When ``background`` is
        given, side tasks are scheduled on it; otherwise they are awaited
        before returning.
        """
        start_time = time.time()
        notifications = parse_batch(payload)
        logger.info("Notification batch received", count=len(notifications))

        novel: list[Notification] = []
        outcomes: dict[int, ItemOutcome] = {}
        for index, notification in enumerate(notifications):
            if self.loop_guard.check_and_record(notification.dedup_key):
                novel.append(notification)
                metrics.record_notification("dispatched")
            else:
                metrics.record_notification("duplicate")
                outcomes[index] = ItemOutcome(
                    processed=False,
                    reason="Duplicate notification suppressed (loop prevention)",
                    subscription_id=notification.subscription_id,
                    resource=notification.resource,
                )
        metrics.update_loop_guard_size(len(self.loop_guard))

        records = await self._load_records() if novel else {}

        results = await asyncio.gather(
            *(self._dispatch_one(notification, records.get(notification.subscription_id)) for notification in novel),
            return_exceptions=True,
        )

        novel_iter = iter(zip(novel, results))
        ordered: list[ItemOutcome] = []
        updates: dict[str, TrackingUpdate] = {}
        for index in range(len(notifications)):
            if index in outcomes:
                ordered.append(outcomes[index])
                continue
            notification, result = next(novel_iter)
            if isinstance(result, BaseException):
                logger.error(
                    "Notification dispatch failed",
                    subscription_id=notification.subscription_id,
                    error=str(result),
                    exc_info=result,
                )
                result = ItemOutcome(
                    processed=False,
                    error=str(result),
                    subscription_id=notification.subscription_id,
                    resource=notification.resource,
                )
            ordered.append(result)
            self._collect_update(updates, records.get(notification.subscription_id), notification, result)

        report = DispatchReport(
            total_notifications=len(notifications),
            processed_count=sum(1 for outcome in ordered if outcome.processed),
            results=ordered,
        )
        metrics.record_dispatch_duration(time.time() - start_time)

        pending = list(updates.values())
        if pending:
            if background is not None:
                background.add_task(self.apply_tracking_updates, pending)
            else:
                await self.apply_tracking_updates(pending)
        return report

    async def _load_records(self) -> dict[str, TrackingRecord]:
        try:
            records = await self.store.list_records()
        except UpstreamError as e:
            logger.warning("Tracking store unavailable during dispatch", error=str(e))
            return {}
        except Exception as e:
            logger.error("Failed to load tracking records during dispatch", error=str(e), exc_info=True)
            return {}
        return {record.subscription_id: record for record in records}

    async def _dispatch_one(self, notification: Notification, record: TrackingRecord | None) -> ItemOutcome:
        # notifications usually arrive without clientState; fall back to the stored copy
        client_state = notification.client_state or (record.client_state if record else None)
        directives = parse(client_state)
        context = _ItemContext(self, notification)

        forward_result, queue_outcome = await asyncio.gather(
            self._forward_branch(notification, directives, context),
            self._queue_branch(notification, directives, context),
            return_exceptions=True,
        )

        if isinstance(forward_result, BaseException):
            logger.error("Forward branch failed", subscription_id=notification.subscription_id, error=str(forward_result))
            forward_result = ForwardResult(success=False, url=directives.forward or "", error=str(forward_result))
        if isinstance(queue_outcome, BaseException):
            logger.error("Queue branch failed", subscription_id=notification.subscription_id, error=str(queue_outcome))
            queue_outcome = ItemOutcome(
                processed=False,
                error=str(queue_outcome),
                subscription_id=notification.subscription_id,
            )

        outcome = queue_outcome or ItemOutcome(processed=True, subscription_id=notification.subscription_id)
        outcome.resource = notification.resource
        outcome.forward = forward_result
        return outcome

    async def _forward_branch(
        self,
        notification: Notification,
        directives: Directives,
        context: _ItemContext,
    ) -> ForwardResult | None:
        if not directives.forward:
            return None

        item = None
        changes = None
        if directives.mode == "withData" or directives.detect_changes:
            item = await context.item()
        if directives.detect_changes:
            changes = await context.changes()

        envelope = self.forwarder.build_envelope(notification, directives, item=item, changes=changes)
        result = await self.forwarder.forward(directives.forward, envelope)
        metrics.record_forward(result.success)
        return result

    async def _queue_branch(
        self,
        notification: Notification,
        directives: Directives,
        context: _ItemContext,
    ) -> ItemOutcome | None:
        if not directives.wants_queue_dispatch:
            return None

        def skipped(reason: str, processor: str | None = None) -> ItemOutcome:
            return ItemOutcome(
                processed=False,
                reason=reason,
                subscription_id=notification.subscription_id,
                processor=processor,
            )

        item = await context.item()
        if item is None:
            return skipped("Item could not be resolved")

        if directives.detect_changes:
            changes = await context.changes()
            if changes is not None and not changes.has_changes:
                return skipped("no field changes detected")

        descriptor = self.registry.resolve(directives, notification.resource, item)
        if descriptor is None:
            logger.info(
                "No processor matched notification",
                subscription_id=notification.subscription_id,
                resource=notification.resource,
            )
            return skipped("No processor matched")

        processor = descriptor.factory(
            ProcessorContext(
                queue_client=self.queue_client,
                directives=directives,
                default_queue=self.settings.default_queue,
                priority=self.settings.default_priority,
            )
        )
        result = await processor.process(item)
        metrics.record_processor_run(descriptor.name, result.processed)
        return ItemOutcome(
            processed=result.processed,
            reason=result.reason,
            error=result.error,
            subscription_id=notification.subscription_id,
            processor=descriptor.name,
            queue_item_id=result.submission.id if result.submission else None,
        )

    @staticmethod
    def _collect_update(
        updates: dict[str, TrackingUpdate],
        record: TrackingRecord | None,
        notification: Notification,
        outcome: ItemOutcome,
    ) -> None:
        if record is None:
            logger.debug("No tracking record for subscription", subscription_id=notification.subscription_id)
            return
        update = updates.setdefault(record.subscription_id, TrackingUpdate(record=record))
        update.notifications += 1
        if outcome.forward is not None and outcome.forward.success:
            update.last_forwarded_at = outcome.forward.forwarded_at

    async def apply_tracking_updates(self, updates: list[TrackingUpdate]) -> None:
        """Apply counter and last-forwarded updates; each failure is logged only."""
        for update in updates:
            record = update.record
            fields: dict[str, Any] = {}
            if update.notifications:
                if record.is_deleted:
                    logger.warning(
                        "Notification received for deleted subscription; counter not updated",
                        subscription_id=record.subscription_id,
                        notification_count=record.notification_count,
                    )
                else:
                    fields["notification_count"] = record.notification_count + update.notifications
            if update.last_forwarded_at is not None:
                fields["last_forwarded_at"] = update.last_forwarded_at
            if not fields or record.record_id is None:
                continue
            try:
                await self.store.patch_record(record.record_id, fields)
            except Exception as e:
                logger.error(
                    "Failed to update tracking record",
                    subscription_id=record.subscription_id,
                    fields=sorted(fields),
                    error=str(e),
                    exc_info=True,
                )
