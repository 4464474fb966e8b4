"""Client for submitting work items to an Orchestrator queue."""

import json
import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from hookrelay.dispatch.config import DispatchSettings, dispatch_settings
from hookrelay.errors import UpstreamError
from hookrelay.graph.auth import ClientCredentialsTokenProvider

logger = structlog.get_logger("hookrelay")

ADD_QUEUE_ITEM_ENDPOINT = "/odata/Queues/UiPathODataSvc.AddQueueItem"


class QueueRecord(BaseModel):
    """A work item ready for submission."""

    reference: str
    specific_content: dict[str, Any]
    priority: str = "Normal"


class SubmissionResult(BaseModel):
    success: bool
    id: str | None = None
    queue_name: str | None = None
    error: str | None = None


def flatten_value(value: Any) -> Any:
    """Queue content only accepts primitives; encode anything else as JSON."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return json.dumps(value, default=str)


class WorkQueueClient:
    """Submits queue items with the ``AddQueueItem`` API."""

    def __init__(
        self,
        settings: DispatchSettings | None = None,
        token_provider: ClientCredentialsTokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or dispatch_settings
        self._transport = transport
        self.token_provider = token_provider
        if self.token_provider is None and self.settings.queue_token_url:
            self.token_provider = ClientCredentialsTokenProvider(
                token_url=self.settings.queue_token_url,
                client_id=self.settings.queue_client_id,
                client_secret=self.settings.queue_client_secret,
                scope=self.settings.queue_scope,
                timeout=self.settings.queue_timeout_seconds,
                transport=transport,
            )

    @property
    def enabled(self) -> bool:
        return self.settings.queue_enabled and bool(self.settings.orchestrator_url)

    def build_payload(self, queue_name: str, record: QueueRecord) -> dict[str, Any]:
        return {
            "itemData": {
                "Name": queue_name,
                "Priority": record.priority,
                "Reference": record.reference,
                "SpecificContent": {
                    key: flatten_value(value) for key, value in record.specific_content.items()
                },
            }
        }

    async def submit(self, queue_name: str, record: QueueRecord) -> SubmissionResult:
        """Submit ``record`` to ``queue_name``. Never raises."""
        if not self.enabled:
            logger.warning("Queue integration is disabled - skipping submission", queue_name=queue_name)
            return SubmissionResult(success=False, queue_name=queue_name, error="Queue integration disabled")

        url = f"{self.settings.orchestrator_url.rstrip('/')}{ADD_QUEUE_ITEM_ENDPOINT}"
        start_time = time.time()
        try:
            headers = {"Content-Type": "application/json"}
            if self.token_provider is not None:
                headers["Authorization"] = f"Bearer {await self.token_provider.get_token()}"
            if self.settings.organization_unit_id:
                headers["X-UIPATH-OrganizationUnitId"] = self.settings.organization_unit_id

            async with httpx.AsyncClient(
                timeout=self.settings.queue_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, json=self.build_payload(queue_name, record), headers=headers)

            if response.status_code >= 400:
                raise UpstreamError(
                    "Queue submission rejected",
                    status_code=response.status_code,
                    detail=response.text[:500],
                )
            body = response.json()
            if not body.get("Id"):
                raise UpstreamError("Invalid response from queue submission", detail=body)

            logger.info(
                "Submitted item to queue",
                queue_name=queue_name,
                reference=record.reference,
                queue_item_id=body["Id"],
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return SubmissionResult(success=True, id=str(body["Id"]), queue_name=queue_name)

        except (UpstreamError, httpx.HTTPError, ValueError) as e:
            logger.error(
                "Queue submission failed",
                queue_name=queue_name,
                reference=record.reference,
                error=str(e),
                detail=getattr(e, "detail", None),
            )
            return SubmissionResult(success=False, queue_name=queue_name, error=str(e))
