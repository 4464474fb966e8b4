"""Graph REST client: subscriptions, list items and resource metadata."""

import re
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog

from hookrelay.errors import UpstreamError, ValidationError
from hookrelay.graph.auth import ClientCredentialsTokenProvider
from hookrelay.subscriptions.config import SubscriptionSettings, subscription_settings
from hookrelay.subscriptions.schemas import ResourceMetadata, Subscription, SubscriptionCreate

logger = structlog.get_logger("hookrelay")

LIST_RESOURCE_PATTERN = re.compile(r"^sites/(?P<site>.+)/lists/(?P<list>[^/]+)")


def split_list_resource(resource: str) -> tuple[str, str] | None:
    """Split ``sites/{site}/lists/{list}[/...]`` into site and list parts."""
    match = LIST_RESOURCE_PATTERN.match(resource or "")
    if not match:
        return None
    list_id = match.group("list")
    site = match.group("site")
    # a trailing /items/{id} belongs to the item, not the list
    return site, list_id


def format_expiry(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class GraphClient:
    """Thin async wrapper over the Graph endpoints HookRelay depends on.

    Acts as the change-notification provider (subscriptions), the item source
    (list items) and the resource metadata source used during reconciliation.
    """

    def __init__(
        self,
        settings: SubscriptionSettings | None = None,
        token_provider: ClientCredentialsTokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or subscription_settings
        self.base_url = self.settings.graph_base_url.rstrip("/")
        self._transport = transport
        self.token_provider = token_provider or ClientCredentialsTokenProvider(
            token_url=self.settings.token_url_template.format(tenant_id=self.settings.tenant_id),
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
            scope=self.settings.graph_scope,
            timeout=self.settings.upstream_timeout_seconds,
            transport=transport,
        )

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """Issue an authenticated request and return the decoded JSON body."""
        token = await self.token_provider.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        url = self._url(path)
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.settings.upstream_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Graph request timed out", method=method, url=url)
            raise UpstreamError(f"Graph request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            logger.error("Graph request failed", method=method, url=url, error=str(e))
            raise UpstreamError(f"Graph request failed: {e}") from e

        if response.status_code == 401:
            self.token_provider.invalidate()

        if response.status_code >= 400:
            logger.error(
                "Graph request rejected",
                method=method,
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamError(
                f"Graph {method} {path} failed",
                status_code=response.status_code,
                detail=response.text[:500],
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_all(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Collect every page of a collection by following ``@odata.nextLink``."""
        items: list[dict[str, Any]] = []
        payload = await self.request("GET", path, params=params)
        while payload:
            items.extend(payload.get("value", []))
            next_link = payload.get("@odata.nextLink")
            if not next_link:
                break
            payload = await self.request("GET", next_link)
        return items

    # Change-notification provider

    async def list_subscriptions(self) -> list[Subscription]:
        raw = await self.list_all("subscriptions")
        logger.info("Subscriptions retrieved", count=len(raw))
        return [Subscription.model_validate(entry) for entry in raw]

    def max_expiry(self, margin: bool = True) -> datetime:
        """Latest expiration the provider accepts, measured from now."""
        expiry = datetime.now(UTC) + timedelta(hours=self.settings.max_lifetime_hours)
        if margin:
            expiry -= timedelta(seconds=self.settings.renewal_safety_margin_seconds)
        return expiry

    async def create_subscription(self, subscription: SubscriptionCreate) -> Subscription:
        notification_url = subscription.notification_url or self.settings.default_notification_url
        if not notification_url:
            raise ValidationError("notificationUrl is required (no default configured)")
        expires_at = subscription.expires_at or self.max_expiry()
        if expires_at > self.max_expiry(margin=False):
            raise ValidationError(
                "expirationDateTime exceeds the provider maximum lifetime",
                {"maxAllowed": format_expiry(self.max_expiry(margin=False))},
            )
        client_state = subscription.client_state or self.settings.default_client_state

        body = {
            "changeType": subscription.change_type,
            "notificationUrl": notification_url,
            "resource": subscription.resource,
            "expirationDateTime": format_expiry(expires_at),
            "clientState": client_state,
        }
        logger.info("Creating subscription", resource=subscription.resource, change_type=subscription.change_type)
        created = await self.request("POST", "subscriptions", json=body)
        # the provider does not reliably echo clientState back
        if not created.get("clientState"):
            created["clientState"] = client_state
        return Subscription.model_validate(created)

    async def renew_subscription(self, subscription_id: str, new_expiry: datetime) -> Subscription:
        updated = await self.request(
            "PATCH",
            f"subscriptions/{subscription_id}",
            json={"expirationDateTime": format_expiry(new_expiry)},
        )
        return Subscription.model_validate(updated)

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.request("DELETE", f"subscriptions/{subscription_id}")
        logger.info("Subscription deleted", subscription_id=subscription_id)

    # Item source

    async def get_item(self, resource: str, item_id: str, timeout: float | None = None) -> dict[str, Any]:
        parts = split_list_resource(resource)
        if parts is None:
            raise UpstreamError(f"Unsupported resource path: {resource}")
        site, list_id = parts
        return await self.request(
            "GET",
            f"sites/{site}/lists/{list_id}/items/{item_id}",
            params={"$expand": "fields"},
            timeout=timeout,
        )

    async def list_recently_modified(
        self, resource: str, top: int = 5, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        parts = split_list_resource(resource)
        if parts is None:
            raise UpstreamError(f"Unsupported resource path: {resource}")
        site, list_id = parts
        payload = await self.request(
            "GET",
            f"sites/{site}/lists/{list_id}/items",
            params={
                "$expand": "fields",
                "$orderby": "lastModifiedDateTime desc",
                "$top": top,
            },
            timeout=timeout,
        )
        return (payload or {}).get("value", [])

    # Resource metadata

    async def describe_resource(self, resource: str) -> ResourceMetadata:
        parts = split_list_resource(resource)
        if parts is None:
            raise UpstreamError(f"Unsupported resource path: {resource}")
        site, list_id = parts
        payload = await self.request("GET", f"sites/{site}/lists/{list_id}")
        display_name = payload.get("displayName") or payload.get("name") or f"List {list_id}"
        kind = "List"
        if (payload.get("list") or {}).get("template") == "documentLibrary":
            kind = "Library"
        return ResourceMetadata(
            display_name=display_name,
            kind=kind,
            site_url=f"sites/{site}",
            list_id=list_id,
        )
