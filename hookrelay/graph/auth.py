"""OAuth client-credentials token provider."""

import time

import httpx
import structlog

from hookrelay.errors import UpstreamError

logger = structlog.get_logger("hookrelay")

# Refresh a little before the token actually expires
EXPIRY_SKEW_SECONDS = 60


class ClientCredentialsTokenProvider:
    """Fetches and caches bearer tokens using the client-credentials grant."""

    def __init__(
        self,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        scope: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope
        self.timeout = timeout
        self._transport = transport
        self._token: str | None = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def get_token(self) -> str:
        """Return a cached token or request a new one."""
        if self._token and time.monotonic() < self._expires_at:
            return self._token

        if not self.client_id or not self.client_secret:
            raise UpstreamError("Missing client credentials for token request")

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": self.scope,
            "grant_type": "client_credentials",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            logger.error("Token request failed", token_url=self.token_url, error=str(e))
            raise UpstreamError(f"Token request failed: {e}") from e

        if response.status_code != 200:
            logger.error(
                "Token request rejected",
                token_url=self.token_url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise UpstreamError(
                "Failed to obtain access token",
                status_code=response.status_code,
                detail=response.text[:500],
            )

        try:
            payload = response.json()
            token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Token response malformed", token_url=self.token_url, body=response.text[:500])
            raise UpstreamError("Token response did not contain an access token", detail=response.text[:500]) from e
        if not isinstance(token, str) or not token:
            logger.error("Token response malformed", token_url=self.token_url, body=response.text[:500])
            raise UpstreamError("Token response did not contain an access token", detail=response.text[:500])

        self._token = token
        self._expires_at = time.monotonic() + max(expires_in - EXPIRY_SKEW_SECONDS, 0.0)
        logger.debug("Access token obtained", token_url=self.token_url, expires_in=expires_in)
        return self._token
