"""Bearer token providers for the Ledger Gateway.

The gateway asks its provider for a token on every call and invalidates
it after an HTTP 401, so providers only need to cache and refresh.
"""

import asyncio
import time
from typing import Optional, Protocol, runtime_checkable

import httpx
import structlog

from meridian.core.retry import TransientError, retry_transient
from meridian.integrations.ledger.errors import LedgerAuthenticationError

log = structlog.get_logger()

# Refresh this many seconds before the token's stated expiry
DEFAULT_EXPIRY_MARGIN_SECONDS = 30.0


@runtime_checkable
class TokenProvider(Protocol):
    """Supplies bearer tokens for ledger calls."""

    async def get_token(self) -> str:
        ...

    def invalidate(self) -> None:
        ...


class StaticTokenProvider:
    """A fixed token, e.g. a long-lived participant admin token from config."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def get_token(self) -> str:
        return self._token

    def invalidate(self) -> None:
        pass


class ClientCredentialsTokenProvider:
    """OAuth2 client-credentials token, cached until shortly before expiry."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: Optional[str] = None,
        audience: Optional[str] = None,
        timeout: float = 10.0,
        expiry_margin_seconds: float = DEFAULT_EXPIRY_MARGIN_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._audience = audience
        self._timeout = timeout
        self._margin = expiry_margin_seconds
        self._transport = transport
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._refresh_lock = asyncio.Lock()
        self._log = log.bind(component="token_provider")

    async def get_token(self) -> str:
        if self._is_fresh():
            return self._token
        # one fetch at a time; waiters reuse the token it produced
        async with self._refresh_lock:
            if self._is_fresh():
                return self._token
            return await self._refresh()

    def _is_fresh(self) -> bool:
        return self._token is not None and time.monotonic() < self._expires_at

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    @retry_transient(max_attempts=3, min_wait=0.5, max_wait=5.0, log_context={"operation": "token_fetch"})
    async def _refresh(self) -> str:
        form = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if self._scope:
            form["scope"] = self._scope
        if self._audience:
            form["audience"] = self._audience

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._token_url, data=form)
        except httpx.TransportError as e:
            raise TransientError("token endpoint unreachable", cause=e) from e

        if response.status_code >= 500:
            raise TransientError(f"token endpoint returned HTTP {response.status_code}")
        if response.status_code != 200:
            raise LedgerAuthenticationError(
                f"token request rejected with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        payload = response.json()
        token = payload.get("access_token")
        if not token:
            raise LedgerAuthenticationError("token response carried no access_token")

        expires_in = float(payload.get("expires_in", 300))
        self._token = token
        self._expires_at = time.monotonic() + max(expires_in - self._margin, 0.0)
        self._log.info("ledger_token_refreshed", expires_in=expires_in)
        return token
