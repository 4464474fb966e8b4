"""Shared fixtures for HookRelay tests."""

from typing import Any

import pytest

from hookrelay.dispatch.config import DispatchSettings
from hookrelay.subscriptions.config import SubscriptionSettings
from hookrelay.subscriptions.schemas import TrackingRecord
from hookrelay.subscriptions.store import TrackingStore, _check_fields


class MemoryTrackingStore(TrackingStore):
    """In-memory tracking store recording every write."""

    def __init__(self, records: list[TrackingRecord] | None = None) -> None:
        self.records: dict[str, TrackingRecord] = {}
        self.patches: list[tuple[str, dict[str, Any]]] = []
        self.created: list[TrackingRecord] = []
        for record in records or []:
            self._add(record)

    def _add(self, record: TrackingRecord) -> TrackingRecord:
        record_id = record.record_id or str(len(self.records) + 1)
        stored = record.model_copy(update={"record_id": record_id})
        self.records[record_id] = stored
        return stored

    async def list_records(self) -> list[TrackingRecord]:
        return list(self.records.values())

    async def create_record(self, record: TrackingRecord) -> TrackingRecord:
        stored = self._add(record)
        self.created.append(stored)
        return stored

    async def patch_record(self, record_id: str, fields: dict[str, Any]) -> None:
        _check_fields(fields)
        self.patches.append((record_id, fields))
        self.records[record_id] = self.records[record_id].model_copy(update=fields)

    def by_subscription(self, subscription_id: str) -> TrackingRecord:
        return next(r for r in self.records.values() if r.subscription_id == subscription_id)


@pytest.fixture
def dispatch_config():
    return DispatchSettings(
        dedup_window_seconds=120,
        forward_timeout_seconds=1,
        item_fetch_timeout_seconds=1,
        default_queue=None,
    )


@pytest.fixture
def subscription_config():
    return SubscriptionSettings(
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        default_notification_url="https://relay.example/webhook",
        maintenance_enabled=False,
        tracking_dsn="sqlite://",
    )


@pytest.fixture
def memory_store():
    """Factory building an in-memory tracking store."""
    return MemoryTrackingStore
