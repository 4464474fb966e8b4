"""Tests for notification batch validation."""

import pytest

from hookrelay.dispatch.schemas import DispatchReport, ItemOutcome, parse_batch
from hookrelay.errors import ValidationError


def event(**overrides):
    base = {
        "subscriptionId": "S1",
        "resource": "sites/a/lists/b",
        "changeType": "Updated",
        "resourceData": {"id": "3"},
        "clientState": None,
    }
    base.update(overrides)
    return base


class TestParseBatch:
    """Whole-batch validation."""

    def test_valid_batch(self):
        notifications = parse_batch({"value": [event()]})

        assert len(notifications) == 1
        assert notifications[0].change_type == "updated"
        assert notifications[0].client_state is None
        assert notifications[0].dedup_key == ("S1", "sites/a/lists/b")

    def test_missing_value_array(self):
        with pytest.raises(ValidationError):
            parse_batch({"events": []})

    def test_non_object_body(self):
        with pytest.raises(ValidationError):
            parse_batch([event()])

    @pytest.mark.parametrize("overrides", [
        {"subscriptionId": None},
        {"resource": ""},
        {"changeType": "renamed"},
        {"resourceData": "not-an-object"},
    ])
    def test_invalid_event_rejects_batch(self, overrides):
        with pytest.raises(ValidationError) as exc_info:
            parse_batch({"value": [event(), event(**overrides)]})
        assert exc_info.value.details["index"] == 1

    def test_original_event_keeps_extra_fields(self):
        notification = parse_batch({"value": [event(tenantId="t1", siteUrl="/sites/a")]})[0]
        original = notification.original_event()

        assert original["subscriptionId"] == "S1"
        assert original["siteUrl"] == "/sites/a"
        assert "clientState" not in original


class TestDispatchReport:
    def test_response_uses_camel_case(self):
        report = DispatchReport(
            total_notifications=1,
            processed_count=0,
            results=[ItemOutcome(processed=False, reason="Duplicate", subscription_id="S1")],
        )
        body = report.to_response()

        assert body["totalNotifications"] == 1
        assert body["processedCount"] == 0
        assert body["results"][0] == {"processed": False, "reason": "Duplicate", "subscriptionId": "S1"}
