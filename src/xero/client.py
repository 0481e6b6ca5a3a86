"""Gateway for every outbound call to the Xero accounting API."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urljoin

import httpx

from src.config.settings import Settings, get_settings
from src.errors import (
    ExternalAPIError,
    IntegrationError,
    MissingTenant,
    NoCredential,
    RefreshConflict,
    TransientError,
)
from src.xero.ledger import get_rotation_ledger
from src.xero.models import CredentialRecord
from src.xero.tokens import TokenManager

logger = logging.getLogger(__name__)

# Methods that are safe to resend after a network failure
IDEMPOTENT_METHODS = {"GET", "HEAD", "PUT", "DELETE"}

CredentialLoader = Callable[[], Awaitable[CredentialRecord | None]]


@dataclass
class GatewayResult:
    data: Any
    credential: CredentialRecord
    rotated: bool


class XeroGateway:
    def __init__(
        self,
        token_manager: TokenManager,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
        retry_backoff_seconds: float = 0.5,
    ):
        self._tokens = token_manager
        self._client = http_client
        self._settings = settings or get_settings()
        self._backoff = retry_backoff_seconds

    async def call(
        self,
        credential: CredentialRecord | None,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        reload_credential: CredentialLoader | None = None,
    ) -> GatewayResult:
        """Call ``endpoint`` on behalf of the session owning ``credential``.

        The returned credential replaces the input whenever ``rotated`` is
        True and must be persisted before the response leaves the server.
        ``reload_credential`` lets transports that can re-read the latest
        persisted credential recover from a concurrent refresh.
        """
        if credential is None:
            raise NoCredential()
        if not credential.tenant_id:
            raise MissingTenant()

        current, rotated = await self._ensure_valid(credential, reload_credential)

        try:
            response = await self._send(current, endpoint, method, body)
            if response.status_code == 401 and not rotated:
                # Xero can invalidate a token before its advertised expiry.
                logger.warning("Xero rejected an unexpired token on %s; forcing one refresh", endpoint)
                current, _ = await self._tokens.ensure_valid_credential(current, force=True)
                rotated = True
                response = await self._send(current, endpoint, method, body)

            if not response.is_success:
                logger.error("Xero API error (%s): %s", endpoint, response.status_code)
                raise ExternalAPIError(response.status_code, response.text)

            try:
                data = response.json() if response.content else None
            except ValueError:
                logger.error("Xero API returned a non-JSON body (%s): %s", endpoint, response.status_code)
                raise ExternalAPIError(response.status_code, response.text)
        except IntegrationError as exc:
            if rotated and exc.rotated_credential is None:
                exc.rotated_credential = current
            raise

        return GatewayResult(data=data, credential=current, rotated=rotated)

    async def _ensure_valid(
        self,
        credential: CredentialRecord,
        reload_credential: CredentialLoader | None,
    ) -> tuple[CredentialRecord, bool]:
        try:
            return await self._tokens.ensure_valid_credential(credential)
        except RefreshConflict:
            if reload_credential is None:
                raise
            latest = await reload_credential()
            if latest is None or latest.refresh_token == credential.refresh_token:
                raise
            logger.info("Recovered from concurrent Xero token refresh using the latest stored credential")
            if not latest.tenant_id:
                latest = latest.with_tenant(credential.tenant_id)
            current, _ = await self._tokens.ensure_valid_credential(latest)
            return current, True

    async def _send(
        self,
        credential: CredentialRecord,
        endpoint: str,
        method: str,
        body: Any,
    ) -> httpx.Response:
        url = urljoin(self._settings.XERO_API_BASE_URL, endpoint.lstrip("/"))
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Xero-Tenant-Id": credential.tenant_id,
            "Accept": "application/json",
        }
        if body is not None:
            headers["Content-Type"] = "application/json"

        attempts = 2 if method.upper() in IDEMPOTENT_METHODS else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._client.request(
                    method.upper(),
                    url,
                    json=body,
                    headers=headers,
                    timeout=self._settings.XERO_HTTP_TIMEOUT_SECONDS,
                )
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt == attempts:
                    raise TransientError(f"Xero API unreachable ({endpoint}): {exc.__class__.__name__}") from exc
                logger.warning("Xero API %s %s failed (%s); retrying once", method, endpoint, exc.__class__.__name__)
                await asyncio.sleep(self._backoff)
        raise AssertionError("unreachable")


# Singletons
_http_client: httpx.AsyncClient | None = None
_gateway: XeroGateway | None = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient()
    return _http_client


def get_token_manager() -> TokenManager:
    return TokenManager(get_http_client(), ledger=get_rotation_ledger())


def get_gateway() -> XeroGateway:
    global _gateway
    if _gateway is None:
        _gateway = XeroGateway(get_token_manager(), get_http_client())
    return _gateway


async def close_http_client() -> None:
    global _http_client, _gateway
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None
    _gateway = None
