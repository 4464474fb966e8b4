"""Tests for envelope forwarding."""

import json

import httpx
import pytest

from hookrelay.dispatch.forwarder import Forwarder
from hookrelay.dispatch.schemas import parse_batch
from hookrelay.routing.changes import compare_states
from hookrelay.routing.directives import parse


@pytest.fixture
def notification():
    return parse_batch({"value": [{
        "subscriptionId": "S1",
        "resource": "sites/a/lists/b",
        "changeType": "updated",
        "resourceData": {"id": "3"},
    }]})[0]


@pytest.fixture
def item():
    return {
        "id": "3",
        "lastModifiedDateTime": "2025-01-01T00:00:00Z",
        "webUrl": "https://contoso.sharepoint.com/x",
        "fields": {"Title": "T", "Status": "Open", "@odata.etag": "1"},
    }


class TestBuildEnvelope:
    """Envelope shape per forwarding mode."""

    def test_simple_mode(self, dispatch_config, notification, item):
        envelope = Forwarder(dispatch_config).build_envelope(notification, parse("forward:https://x.example"), item=item)

        assert envelope["source"] == "SharePoint-Webhook-Proxy"
        assert envelope["originalEvent"]["subscriptionId"] == "S1"
        assert envelope["metadata"]["forwardingMode"] == "simple"
        assert "currentState" not in envelope

    def test_with_data_mode_filters_fields(self, dispatch_config, notification, item):
        directives = parse("forward:https://x.example;mode:withData;fields:Status")
        envelope = Forwarder(dispatch_config).build_envelope(notification, directives, item=item)

        assert envelope["currentState"] == {
            "id": "3",
            "lastModified": "2025-01-01T00:00:00Z",
            "webUrl": "https://contoso.sharepoint.com/x",
            "fields": {"Status": "Open"},
        }

    def test_changes_attached(self, dispatch_config, notification):
        changes = compare_states({"Status": "Open"}, {"Status": "Closed"})
        envelope = Forwarder(dispatch_config).build_envelope(
            notification, parse("forward:https://x.example"), changes=changes
        )

        assert envelope["changes"]["isNew"] is False
        assert envelope["changes"]["changes"][0]["field"] == "Status"


class TestForward:
    """Delivery outcomes."""

    @pytest.mark.asyncio
    async def test_successful_post(self, dispatch_config):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(202)

        forwarder = Forwarder(dispatch_config, transport=httpx.MockTransport(handler))
        result = await forwarder.forward("https://x.example/y", {"hello": "world"})

        assert result.success is True
        assert result.status_code == 202
        assert result.forwarded_at is not None
        assert received == [{"hello": "world"}]

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self, dispatch_config):
        forwarder = Forwarder(dispatch_config, transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        result = await forwarder.forward("https://x.example/y", {})

        assert result.success is False
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, dispatch_config):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        forwarder = Forwarder(dispatch_config, transport=httpx.MockTransport(handler))
        result = await forwarder.forward("https://x.example/y", {})

        assert result.success is False
        assert result.error == "Forwarding timed out"
