"""Tests for the tracking store backends."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from hookrelay.errors import UpstreamError
from hookrelay.subscriptions.schemas import TrackingRecord, TrackingStatus
from hookrelay.subscriptions.store import ListTrackingStore, SqlTrackingStore


@pytest.fixture
def sql_store():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = SqlTrackingStore(engine=engine)
    store.create_tables()
    return store


def record(**overrides):
    values = {
        "subscription_id": "S1",
        "resource": "sites/contoso/lists/L1",
        "resource_display_name": "Contracts",
        "resource_kind": "Library",
        "site_url": "sites/contoso",
        "list_id": "L1",
        "expires_at": datetime(2030, 1, 1, tzinfo=UTC),
        "client_state": "forward:https://x.example/y",
        "forwarding_url": "https://x.example/y",
        "is_proxy": True,
    }
    values.update(overrides)
    return TrackingRecord(**values)


class TestSqlTrackingStore:
    """SQLAlchemy-backed store."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, sql_store):
        created = await sql_store.create_record(record())

        records = await sql_store.list_records()

        assert created.record_id is not None
        assert len(records) == 1
        assert records[0].subscription_id == "S1"
        assert records[0].status == TrackingStatus.ACTIVE
        assert records[0].is_proxy is True
        assert records[0].expires_at == datetime(2030, 1, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_patch_only_given_fields(self, sql_store):
        created = await sql_store.create_record(record(notification_count=3))

        await sql_store.patch_record(created.record_id, {"status": TrackingStatus.DELETED, "notification_count": 4})

        stored = await sql_store.find_by_subscription("S1")
        assert stored.status == TrackingStatus.DELETED
        assert stored.notification_count == 4
        assert stored.client_state == "forward:https://x.example/y"

    @pytest.mark.asyncio
    async def test_patch_unknown_field_rejected(self, sql_store):
        created = await sql_store.create_record(record())

        with pytest.raises(ValueError):
            await sql_store.patch_record(created.record_id, {"subscription_id": "other"})

    @pytest.mark.asyncio
    async def test_patch_missing_record(self, sql_store):
        with pytest.raises(UpstreamError) as exc_info:
            await sql_store.patch_record("404", {"notification_count": 1})
        assert exc_info.value.status_code == 404


class TestListTrackingStore:
    """Store kept in a SharePoint list."""

    @pytest.fixture
    def graph(self):
        graph = Mock()
        graph.list_all = AsyncMock(return_value=[
            {"id": "11", "fields": {
                "Title": "Library - Contracts",
                "SubscriptionId": "S1",
                "SiteUrl": "sites/contoso",
                "ListId": "L1",
                "ListName": "Contracts",
                "ResourceType": "Library",
                "Status": "Deleted",
                "NotificationCount": 7,
                "ClientState": "forward:https://x.example/y",
                "ForwardingUrl": "https://x.example/y",
                "IsProxy": "Yes",
                "ExpirationDateTime": "2030-01-01T00:00:00Z",
            }},
            {"id": "12", "fields": {"Title": "orphan row"}},
        ])
        graph.request = AsyncMock(return_value={"id": "13"})
        return graph

    @pytest.mark.asyncio
    async def test_list_records_maps_columns(self, graph):
        store = ListTrackingStore(graph, "contoso", "tracking")

        records = await store.list_records()

        assert len(records) == 1
        tracked = records[0]
        assert tracked.record_id == "11"
        assert tracked.resource == "sites/contoso/lists/L1"
        assert tracked.status == TrackingStatus.DELETED
        assert tracked.notification_count == 7
        assert tracked.is_proxy is True
        graph.list_all.assert_awaited_once_with(
            "sites/contoso/lists/tracking/items", params={"$expand": "fields", "$top": 5000}
        )

    @pytest.mark.asyncio
    async def test_create_record_posts_fields(self, graph):
        store = ListTrackingStore(graph, "contoso", "tracking")

        created = await store.create_record(record())

        assert created.record_id == "13"
        method, path = graph.request.call_args[0]
        fields = graph.request.call_args[1]["json"]["fields"]
        assert (method, path) == ("POST", "sites/contoso/lists/tracking/items")
        assert fields["Title"] == "Library - Contracts"
        assert fields["IsProxy"] == "Yes"
        assert fields["Status"] == "Active"
        assert fields["ExpirationDateTime"] == "2030-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_patch_record(self, graph):
        store = ListTrackingStore(graph, "contoso", "tracking")

        await store.patch_record("11", {"notification_count": 8})

        graph.request.assert_awaited_once_with(
            "PATCH",
            "sites/contoso/lists/tracking/items/11",
            json={"fields": {"NotificationCount": 8}},
        )

    @pytest.mark.asyncio
    async def test_resource_column_and_whole_second_dates(self, graph):
        store = ListTrackingStore(graph, "contoso", "tracking")

        await store.create_record(record(
            resource="drives/b!abc/root",
            expires_at=datetime(2030, 1, 1, 0, 0, 0, 654321, tzinfo=UTC),
        ))

        fields = graph.request.call_args[1]["json"]["fields"]
        assert fields["Resource"] == "drives/b!abc/root"
        assert fields["ExpirationDateTime"] == "2030-01-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_stored_resource_preferred_over_site_and_list(self, graph):
        graph.list_all = AsyncMock(return_value=[
            {"id": "21", "fields": {"SubscriptionId": "D1", "Resource": "drives/b!abc/root", "Status": "Active"}},
        ])
        store = ListTrackingStore(graph, "contoso", "tracking")

        records = await store.list_records()

        assert records[0].resource == "drives/b!abc/root"

    @pytest.mark.asyncio
    async def test_malformed_row_raises_upstream_error(self, graph):
        graph.list_all = AsyncMock(return_value=[
            {"id": "31", "fields": {"SubscriptionId": "OTHER", "Status": "Inactive"}},
        ])
        store = ListTrackingStore(graph, "contoso", "tracking")

        with pytest.raises(UpstreamError):
            await store.list_records()
