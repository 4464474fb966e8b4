"""Built-in queue processors and the default registry."""

import re
import time
from typing import Any

from hookrelay.errors import SoftFailure, ValidationError
from hookrelay.queue.client import QueueRecord, flatten_value
from hookrelay.routing.directives import Directives
from hookrelay.routing.registry import (
    Item,
    Processor,
    ProcessorContext,
    ProcessorDescriptor,
    ProcessorRegistry,
    item_identifier,
)

DOCUMENT_RESOURCE_PATTERN = r"shared documents|documents|/drives/"

# keys carried as structure, not as queue content
_SKIPPED_ITEM_KEYS = frozenset({"fields", "parentReference", "fileSystemInfo", "contentType"})


def base_metadata(item: Item) -> dict[str, Any]:
    """Normalized identity fields common to every SharePoint item."""
    return {
        "ItemId": item_identifier(item),
        "Title": item.get("Title") or item.get("name") or item.get("FileLeafRef"),
        "WebUrl": item.get("webUrl"),
        "LastModified": item.get("lastModifiedDateTime") or item.get("Modified"),
        "Created": item.get("createdDateTime") or item.get("Created"),
        "ListItemUniqueId": item.get("sharepointIds", {}).get("listItemUniqueId")
        if isinstance(item.get("sharepointIds"), dict)
        else None,
    }


def file_name(item: Item) -> str:
    return str(item.get("FileLeafRef") or item.get("name") or item.get("Title") or "item")


def build_reference(item: Item, prefix: str = "SPDOC", now_ms: int | None = None) -> str:
    """Queue reference ``<prefix>_<file>_<id>_<millis>``; stays unique per submission."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", file_name(item))
    return f"{prefix}_{safe_name}_{item_identifier(item)}_{stamp}"


class GenericDocumentProcessor(Processor):
    """Submits any document-library item with its metadata and fields."""

    name = "generic-document"

    def __init__(self, context: ProcessorContext, allowed_extensions: tuple[str, ...] = ()) -> None:
        super().__init__(context)
        self.allowed_extensions = tuple(ext.lower().lstrip(".") for ext in allowed_extensions)

    def should_process(self, item: Item) -> bool:
        if not item:
            return False
        if not self.allowed_extensions:
            return True
        extension = file_name(item).rsplit(".", 1)[-1].lower() if "." in file_name(item) else ""
        return extension in self.allowed_extensions

    def validate(self, item: Item) -> None:
        if not item_identifier(item):
            raise ValidationError("Item has no identifier")
        if not self.context.queue_name:
            raise ValidationError("Queue name is required for generic document processing")
        if item.get("deleted"):
            raise SoftFailure("Item has been deleted")

    def content_fields(self, item: Item) -> dict[str, Any]:
        content: dict[str, Any] = {}
        for key, value in item.items():
            if key.startswith("@") or key in _SKIPPED_ITEM_KEYS:
                continue
            content[key] = value
        fields = item.get("fields")
        if isinstance(fields, dict):
            for key, value in fields.items():
                if not key.startswith("@"):
                    content.setdefault(key, value)

        allowlist = self.context.directives.field_allowlist
        if allowlist:
            wanted = {name.lower() for name in allowlist}
            content = {key: value for key, value in content.items() if key.lower() in wanted}
        return content

    def transform(self, item: Item) -> QueueRecord:
        specific_content = {
            key: value for key, value in base_metadata(item).items() if value is not None
        }
        for key, value in self.content_fields(item).items():
            specific_content.setdefault(key, flatten_value(value))

        parent = item.get("parentReference")
        if isinstance(parent, dict) and parent.get("path"):
            specific_content["ParentPath"] = parent["path"]

        specific_content["ProcessedBy"] = self.name
        return QueueRecord(
            reference=build_reference(item),
            specific_content=specific_content,
            priority=self.context.priority,
        )


def has_file_name(directives: Directives, resource: str, item: Item | None) -> bool:
    return bool(item) and bool(item.get("FileLeafRef") or item.get("file"))


def default_registry() -> ProcessorRegistry:
    registry = ProcessorRegistry()
    registry.register(
        ProcessorDescriptor(
            name=GenericDocumentProcessor.name,
            factory=GenericDocumentProcessor,
            hint="processor:document",
            resource_pattern=DOCUMENT_RESOURCE_PATTERN,
            predicate=has_file_name,
        )
    )
    return registry


# Global registry instance
processor_registry = default_registry()
