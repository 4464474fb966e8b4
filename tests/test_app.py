"""Test the webhook endpoint, health check and subscription routes."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from hookrelay.app import create_app, init_services
from hookrelay.errors import UpstreamError
from hookrelay.subscriptions.schemas import Subscription, TrackingRecord


@pytest.fixture
def graph():
    graph = Mock()
    graph.get_item = AsyncMock(return_value={"id": "3", "fields": {"Title": "x"}})
    graph.list_recently_modified = AsyncMock(return_value=[])
    graph.list_subscriptions = AsyncMock(return_value=[])
    graph.delete_subscription = AsyncMock()
    graph.describe_resource = AsyncMock(side_effect=UpstreamError("forbidden", status_code=403))
    graph.max_expiry = Mock(return_value=datetime(2030, 1, 1, tzinfo=UTC))
    return graph


@pytest.fixture
def store(memory_store):
    return memory_store([TrackingRecord(record_id="1", subscription_id="S1", notification_count=5)])


@pytest.fixture
def client(graph, store, subscription_config, dispatch_config):
    """Test client with services wired to in-memory collaborators (lifespan not run)."""
    app = create_app()
    init_services(
        app,
        sub_settings=subscription_config,
        disp_settings=dispatch_config,
        graph=graph,
        tracking_store=store,
        queue_client=Mock(),
    )
    return TestClient(app)


def test_health_endpoint(client):
    """Test the health check endpoint."""
    response = client.get("/health/")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "up"
    assert data["services"]["dispatcher"] == "up"


def test_validation_handshake_get(client):
    response = client.get("/webhook", params={"validationToken": "abc:123 token"})

    assert response.status_code == 200
    assert response.text == "abc:123 token"
    assert response.headers["content-type"].startswith("text/plain")


def test_validation_handshake_post(client):
    response = client.post("/webhook?validationToken=xyz")

    assert response.status_code == 200
    assert response.text == "xyz"


def test_get_without_token(client):
    response = client.get("/webhook")
    assert response.status_code == 400


def test_notification_batch(client, store):
    payload = {"value": [{
        "subscriptionId": "S1",
        "resource": "sites/a/lists/b",
        "changeType": "updated",
        "resourceData": {"id": "3"},
        "clientState": None,
    }]}

    response = client.post("/webhook", json=payload)

    assert response.status_code == 200
    body = response.json()
    assert body["totalNotifications"] == 1
    assert body["processedCount"] == 1
    assert body["results"][0]["subscriptionId"] == "S1"
    assert "X-Request-ID" in response.headers
    assert store.by_subscription("S1").notification_count == 6


def test_malformed_batch(client):
    response = client.post("/webhook", json={"value": [{"subscriptionId": "S1"}]})

    assert response.status_code == 400
    assert "invalid" in response.json()["detail"]


def test_invalid_json(client):
    response = client.post("/webhook", content="not json {", headers={"Content-Type": "application/json"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid JSON payload"


def test_metrics_endpoint(client):
    client.post("/webhook", json={"value": []})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "hookrelay_dispatch_duration_seconds" in response.text


def test_sync_route(client, graph, store):
    graph.list_subscriptions.return_value = [
        Subscription(
            id="S2",
            resource="sites/contoso/lists/L2",
            change_type="updated",
            notification_url="https://relay.example/webhook",
            expires_at=datetime(2030, 1, 1, tzinfo=UTC),
        )
    ]

    response = client.post("/subscriptions/sync")

    assert response.status_code == 200
    assert response.json()["created"] == 1
    assert response.json()["deletedMarked"] == 1
    assert store.by_subscription("S2").resource_display_name == "List L2"


def test_delete_route_marks_record(client, graph, store):
    response = client.delete("/subscriptions/S1")

    assert response.status_code == 204
    graph.delete_subscription.assert_awaited_once_with("S1")
    assert store.by_subscription("S1").status == "Deleted"


def test_delete_unknown_subscription(client, graph):
    graph.delete_subscription.side_effect = UpstreamError("Graph DELETE failed", status_code=404)

    response = client.delete("/subscriptions/missing")

    assert response.status_code == 404


def test_tracking_route(client):
    response = client.get("/subscriptions/tracking")

    assert response.status_code == 200
    assert response.json()["records"][0]["subscription_id"] == "S1"
