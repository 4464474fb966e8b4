"""Registry resolving a change event to a pluggable queue processor.

Descriptors are plain ``{name, factory, hint, resource_pattern, predicate}``
records evaluated in a fixed precedence order; the first match wins:

1. explicit ``processor:<name>`` directive naming the descriptor
2. the descriptor's business hint appearing as a clientState token
3. the descriptor's resource-path pattern matching the notification resource
4. the descriptor's item predicate (e.g. on the resolved item's identity)

Finding no processor is a normal outcome, not an error.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import BaseModel

from hookrelay.errors import SoftFailure, ValidationError
from hookrelay.queue.client import QueueRecord, SubmissionResult, WorkQueueClient
from hookrelay.routing.directives import Directives, parse

logger = structlog.get_logger("hookrelay")

Item = dict[str, Any]
ItemPredicate = Callable[[Directives, str, Item | None], bool]


def item_identifier(item: Item | None) -> str | None:
    if not item:
        return None
    value = item.get("ID") or item.get("id")
    return str(value) if value is not None else None


class ProcessingResult(BaseModel):
    """Structured outcome of one ``Processor.process`` call."""

    processed: bool
    reason: str | None = None
    error: str | None = None
    item_id: str | None = None
    queue_name: str | None = None
    submission: SubmissionResult | None = None


@dataclass
class ProcessorContext:
    """Everything a processor instance needs for one item."""

    queue_client: WorkQueueClient
    directives: Directives = field(default_factory=Directives)
    default_queue: str | None = None
    priority: str = "Normal"

    @property
    def queue_name(self) -> str | None:
        return self.directives.uipath_queue or self.default_queue


class Processor:
    """Base class for business processors.

    Subclasses override the four steps; ``process`` composes them and turns
    every failure into a ``ProcessingResult`` instead of raising.
    """

    name = "processor"

    def __init__(self, context: ProcessorContext) -> None:
        self.context = context

    def should_process(self, item: Item) -> bool:
        return item is not None

    def validate(self, item: Item) -> None:
        """Raise ``ValidationError`` when the item cannot be submitted."""

    def transform(self, item: Item) -> QueueRecord:
        raise NotImplementedError

    async def submit(self, record: QueueRecord) -> SubmissionResult:
        queue_name = self.context.queue_name
        if not queue_name:
            raise ValidationError(f"Queue name not configured for processor {self.name}")
        return await self.context.queue_client.submit(queue_name, record)

    async def process(self, item: Item) -> ProcessingResult:
        item_id = item_identifier(item)
        queue_name = self.context.queue_name
        try:
            if not self.should_process(item):
                logger.debug("Processor skipping item", processor=self.name, item_id=item_id)
                return ProcessingResult(
                    processed=False,
                    reason="Item did not meet processing criteria",
                    item_id=item_id,
                    queue_name=queue_name,
                )
            self.validate(item)
            record = self.transform(item)
            submission = await self.submit(record)
        except SoftFailure as e:
            return ProcessingResult(processed=False, reason=e.reason, item_id=item_id, queue_name=queue_name)
        except ValidationError as e:
            logger.warning("Processor validation failed", processor=self.name, item_id=item_id, error=e.message)
            return ProcessingResult(
                processed=False,
                error=f"Validation failed: {e.message}",
                item_id=item_id,
                queue_name=queue_name,
            )
        except Exception as e:
            # processors are plug-ins; their failures stay inside the result
            logger.error(
                "Processor failed",
                processor=self.name,
                item_id=item_id,
                error=str(e),
                exc_info=True,
            )
            return ProcessingResult(processed=False, error=str(e), item_id=item_id, queue_name=queue_name)

        if not submission.success:
            return ProcessingResult(
                processed=False,
                error=submission.error or "Queue submission failed",
                item_id=item_id,
                queue_name=queue_name,
                submission=submission,
            )
        return ProcessingResult(processed=True, item_id=item_id, queue_name=queue_name, submission=submission)


@dataclass(frozen=True)
class ProcessorDescriptor:
    name: str
    factory: Callable[[ProcessorContext], Processor]
    hint: str | None = None
    resource_pattern: str | None = None
    predicate: ItemPredicate | None = None


def _explicit_match(descriptor: ProcessorDescriptor, directives: Directives, resource: str, item: Item | None) -> bool:
    return directives.processor is not None and directives.processor.strip().lower() == descriptor.name.lower()


def _hint_match(descriptor: ProcessorDescriptor, directives: Directives, resource: str, item: Item | None) -> bool:
    return bool(descriptor.hint) and directives.has_token(descriptor.hint)


def _resource_match(descriptor: ProcessorDescriptor, directives: Directives, resource: str, item: Item | None) -> bool:
    if not descriptor.resource_pattern or not resource:
        return False
    return re.search(descriptor.resource_pattern, resource, re.IGNORECASE) is not None


def _item_match(descriptor: ProcessorDescriptor, directives: Directives, resource: str, item: Item | None) -> bool:
    return descriptor.predicate is not None and bool(descriptor.predicate(directives, resource, item))


MATCH_TIERS = (
    ("explicit", _explicit_match),
    ("hint", _hint_match),
    ("resource", _resource_match),
    ("item", _item_match),
)


class ProcessorRegistry:
    """Ordered collection of processor descriptors."""

    def __init__(self) -> None:
        self._descriptors: list[ProcessorDescriptor] = []

    def register(self, descriptor: ProcessorDescriptor) -> None:
        if not descriptor.name or not callable(descriptor.factory):
            raise ValueError("Invalid processor descriptor registration")
        if any(existing.name == descriptor.name for existing in self._descriptors):
            raise ValueError(f"Processor with name {descriptor.name} already registered")
        self._descriptors.append(descriptor)

    def names(self) -> list[str]:
        return [descriptor.name for descriptor in self._descriptors]

    def resolve(
        self,
        client_state: str | Directives | None,
        resource: str,
        item: Item | None = None,
    ) -> ProcessorDescriptor | None:
        directives = client_state if isinstance(client_state, Directives) else parse(client_state)

        for tier, matcher in MATCH_TIERS:
            for descriptor in self._descriptors:
                try:
                    matched = matcher(descriptor, directives, resource, item)
                except Exception as e:
                    logger.warning(
                        "Processor match evaluation failed",
                        processor=descriptor.name,
                        tier=tier,
                        error=str(e),
                    )
                    continue
                if matched:
                    logger.debug("Processor resolved", processor=descriptor.name, tier=tier, resource=resource)
                    return descriptor
        return None
