"""Forward branch: deliver an enriched envelope to a configured endpoint."""

from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from hookrelay import __version__
from hookrelay.dispatch.config import DispatchSettings, dispatch_settings
from hookrelay.dispatch.schemas import ForwardResult, Notification
from hookrelay.routing.changes import ChangeSet
from hookrelay.routing.directives import Directives

logger = structlog.get_logger("hookrelay")


def current_state(item: dict[str, Any], allowlist: tuple[str, ...] = ()) -> dict[str, Any]:
    """Snapshot of the item for ``withData`` envelopes."""
    fields = item.get("fields") if isinstance(item.get("fields"), dict) else {}
    fields = {key: value for key, value in fields.items() if not key.startswith("@odata")}
    if allowlist:
        wanted = {name.lower() for name in allowlist}
        fields = {key: value for key, value in fields.items() if key.lower() in wanted}
    return {
        "id": item.get("id"),
        "lastModified": item.get("lastModifiedDateTime"),
        "webUrl": item.get("webUrl"),
        "fields": fields,
    }


class Forwarder:
    """Posts enriched envelopes; failures are reported, never raised."""

    def __init__(
        self,
        settings: DispatchSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or dispatch_settings
        self._transport = transport

    def build_envelope(
        self,
        notification: Notification,
        directives: Directives,
        item: dict[str, Any] | None = None,
        changes: ChangeSet | None = None,
    ) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "source": self.settings.envelope_source,
            "originalEvent": notification.original_event(),
            "metadata": {
                "processedBy": f"hookrelay/{__version__}",
                "forwardingMode": directives.mode,
                "hostname": self.settings.hostname,
            },
        }
        if directives.mode == "withData":
            if item is not None:
                envelope["currentState"] = current_state(item, directives.field_allowlist)
            else:
                envelope["metadata"]["currentStateError"] = "Item could not be resolved"
        if changes is not None:
            envelope["changes"] = changes.model_dump(by_alias=True)
        return envelope

    async def forward(self, url: str, envelope: dict[str, Any]) -> ForwardResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.forward_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    url,
                    json=envelope,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException:
            logger.warning("Forwarding timed out", url=url, timeout=self.settings.forward_timeout_seconds)
            return ForwardResult(success=False, url=url, error="Forwarding timed out")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Forwarding failed", url=url, error=str(e))
            return ForwardResult(success=False, url=url, error=str(e))

        if response.status_code >= 400:
            logger.warning(
                "Forward destination rejected envelope",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            return ForwardResult(
                success=False,
                url=url,
                status_code=response.status_code,
                error=f"Destination responded with {response.status_code}",
            )

        logger.info("Notification forwarded", url=url, status_code=response.status_code)
        return ForwardResult(
            success=True,
            url=url,
            status_code=response.status_code,
            forwarded_at=datetime.now(UTC),
        )
