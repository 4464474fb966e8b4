"""Field-level change detection against the last seen item version."""

from collections import OrderedDict
from typing import Any

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger("hookrelay")

TRACKED_SYSTEM_FIELDS = frozenset({"_UIVersionString"})


class FieldChange(BaseModel):
    field: str
    old: Any = None
    new: Any = None


class ChangeSet(BaseModel):
    is_new: bool = Field(default=False, serialization_alias="isNew")
    changes: list[FieldChange] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.is_new or bool(self.changes)


def is_tracked_field(name: str) -> bool:
    if name.startswith("@odata") or "@odata" in name:
        return False
    if name.startswith("_"):
        return name in TRACKED_SYSTEM_FIELDS
    return True


def item_fields(item: dict[str, Any]) -> dict[str, Any]:
    fields = item.get("fields")
    source = fields if isinstance(fields, dict) else item
    return {key: value for key, value in source.items() if is_tracked_field(key)}


def compare_states(previous: dict[str, Any] | None, current: dict[str, Any]) -> ChangeSet:
    """Diff two field maps; no previous state means the item is new."""
    if previous is None:
        return ChangeSet(is_new=True)

    changes = []
    for name in sorted(set(previous) | set(current)):
        if not is_tracked_field(name):
            continue
        old, new = previous.get(name), current.get(name)
        if old != new:
            changes.append(FieldChange(field=name, old=old, new=new))
    return ChangeSet(changes=changes)


class ChangeDetector:
    """Keeps a bounded, process-local snapshot per item."""

    def __init__(self, max_entries: int = 5000) -> None:
        self.max_entries = max_entries
        self._snapshots: OrderedDict[str, dict[str, Any]] = OrderedDict()

    @staticmethod
    def key(resource: str, item: dict[str, Any]) -> str:
        return f"{resource}|{item.get('id') or item.get('ID')}"

    def previous(self, resource: str, item: dict[str, Any]) -> dict[str, Any] | None:
        return self._snapshots.get(self.key(resource, item))

    def detect(self, resource: str, item: dict[str, Any]) -> ChangeSet:
        """Compare ``item`` with its last snapshot, then remember it."""
        key = self.key(resource, item)
        current = item_fields(item)
        change_set = compare_states(self._snapshots.get(key), current)

        self._snapshots[key] = current
        self._snapshots.move_to_end(key)
        while len(self._snapshots) > self.max_entries:
            self._snapshots.popitem(last=False)

        logger.debug(
            "Item changes detected",
            key=key,
            is_new=change_set.is_new,
            changed_fields=[change.field for change in change_set.changes],
        )
        return change_set

    def __len__(self) -> int:
        return len(self._snapshots)
