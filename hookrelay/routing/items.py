"""Resolve a notification's resource reference to the changed item."""

import re
from typing import Any, Protocol

import structlog

from hookrelay.dispatch.config import DispatchSettings, dispatch_settings
from hookrelay.errors import UpstreamError

logger = structlog.get_logger("hookrelay")

ITEM_RESOURCE_PATTERN = re.compile(r"sites/([^/]+)/lists/([^/]+)/items/([^/]+)")


class ItemSource(Protocol):
    async def get_item(self, resource: str, item_id: str, timeout: float | None = None) -> dict[str, Any]: ...

    async def list_recently_modified(
        self, resource: str, top: int = 5, timeout: float | None = None
    ) -> list[dict[str, Any]]: ...


def merge_fields(item: dict[str, Any]) -> dict[str, Any]:
    """Lift list-item ``fields`` to the top level, keeping the original block."""
    fields = item.get("fields")
    if not isinstance(fields, dict):
        return dict(item)
    merged = dict(item)
    for key, value in fields.items():
        merged.setdefault(key, value)
    return merged


def explicit_item_id(resource: str, resource_data: dict[str, Any] | None) -> str | None:
    match = ITEM_RESOURCE_PATTERN.search(resource or "")
    if match:
        return match.group(3)
    if resource_data:
        value = resource_data.get("id") or resource_data.get("itemId")
        if value is not None and str(value):
            return str(value)
    return None


class ItemResolver:
    """Fetches the item a notification refers to.

    When the notification carries no item identifier, the most recently
    modified item under the resource is used instead. That heuristic races:
    two near-simultaneous edits to different items under the same list can
    both resolve to whichever was modified last. The caveat is logged each
    time the fallback is used.
    """

    def __init__(self, item_source: ItemSource, settings: DispatchSettings | None = None) -> None:
        self.item_source = item_source
        self.settings = settings or dispatch_settings

    async def resolve(self, resource: str, resource_data: dict[str, Any] | None = None) -> dict[str, Any] | None:
        timeout = self.settings.item_fetch_timeout_seconds
        item_id = explicit_item_id(resource, resource_data)
        base_resource = resource.split("/items/", 1)[0] if resource else resource

        try:
            if item_id:
                item = await self.item_source.get_item(base_resource, item_id, timeout=timeout)
                return merge_fields(item) if item else None

            recent = await self.item_source.list_recently_modified(
                base_resource,
                top=self.settings.recent_items_page_size,
                timeout=timeout,
            )
        except UpstreamError as e:
            logger.warning("Item resolution failed", resource=resource, item_id=item_id, error=str(e))
            return None
        except Exception as e:
            logger.error("Unexpected error resolving item", resource=resource, error=str(e), exc_info=True)
            return None

        if not recent:
            logger.info("No items found under resource", resource=resource)
            return None

        item = recent[0]
        logger.warning(
            "Resolved item by most recent modification; concurrent edits may resolve the wrong item",
            resource=resource,
            item_id=item.get("id"),
        )
        return merge_fields(item)
