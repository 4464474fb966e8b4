"""Tests for item resolution."""

from unittest.mock import AsyncMock, Mock

import pytest
from structlog.testing import capture_logs

from hookrelay.errors import UpstreamError
from hookrelay.routing.items import ItemResolver, explicit_item_id


@pytest.fixture
def item_source():
    source = Mock()
    source.get_item = AsyncMock(return_value={"id": "3", "fields": {"Title": "Three", "id": "ignored"}})
    source.list_recently_modified = AsyncMock(return_value=[
        {"id": "9", "fields": {"Title": "Latest"}},
        {"id": "8", "fields": {"Title": "Older"}},
    ])
    return source


class TestItemResolver:
    """Direct fetch, heuristic fallback and failure handling."""

    def test_explicit_id_from_resource_path(self):
        assert explicit_item_id("sites/a/lists/b/items/12", None) == "12"
        assert explicit_item_id("sites/a/lists/b", {"id": "4"}) == "4"
        assert explicit_item_id("sites/a/lists/b", {}) is None

    @pytest.mark.asyncio
    async def test_fetches_explicit_item(self, item_source, dispatch_config):
        resolver = ItemResolver(item_source, dispatch_config)

        item = await resolver.resolve("sites/a/lists/b", {"id": "3"})

        item_source.get_item.assert_awaited_once_with("sites/a/lists/b", "3", timeout=1)
        assert item["Title"] == "Three"
        assert item["id"] == "3"

    @pytest.mark.asyncio
    async def test_item_path_is_trimmed(self, item_source, dispatch_config):
        resolver = ItemResolver(item_source, dispatch_config)

        await resolver.resolve("sites/a/lists/b/items/3", None)

        assert item_source.get_item.call_args[0][:2] == ("sites/a/lists/b", "3")

    @pytest.mark.asyncio
    async def test_falls_back_to_most_recent_with_warning(self, item_source, dispatch_config):
        resolver = ItemResolver(item_source, dispatch_config)

        with capture_logs() as logs:
            item = await resolver.resolve("sites/a/lists/b", {})

        assert item["id"] == "9"
        assert item["Title"] == "Latest"
        assert any(log["log_level"] == "warning" and "most recent" in log["event"] for log in logs)

    @pytest.mark.asyncio
    async def test_empty_list_returns_none(self, item_source, dispatch_config):
        item_source.list_recently_modified.return_value = []
        resolver = ItemResolver(item_source, dispatch_config)

        assert await resolver.resolve("sites/a/lists/b", None) is None

    @pytest.mark.asyncio
    async def test_upstream_failure_returns_none(self, item_source, dispatch_config):
        item_source.get_item.side_effect = UpstreamError("not found", status_code=404)
        resolver = ItemResolver(item_source, dispatch_config)

        assert await resolver.resolve("sites/a/lists/b", {"id": "3"}) is None
