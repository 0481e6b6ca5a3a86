"""Xero OAuth2 token lifecycle: handshake, expiry checks and refresh.

Credentials are passed in and returned as values; nothing here reads or
writes the session. The caller owns persistence and MUST persist a rotated
credential in full, because the refresh token it replaced is already dead.
"""

import asyncio
import logging
from datetime import timedelta
from urllib.parse import urlencode

import httpx

from src.config.settings import Settings, get_settings
from src.errors import (
    IntegrationDisabled,
    NoCredential,
    RefreshConflict,
    RefreshFailed,
    TransientError,
)
from src.xero.ledger import RotationLedger
from src.xero.models import CredentialRecord, now_ms

logger = logging.getLogger(__name__)


class TokenManager:
    """Keeps a Xero credential usable.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient``; requests carry their own timeout.
    ledger:
        Where successful rotations are recorded. Without one, every rejected
        refresh is treated as terminal.
    settle_seconds:
        How long to wait before re-checking the ledger after a rejected
        refresh, so a sibling request that is still recording its rotation
        is not mistaken for a revocation.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ledger: RotationLedger | None = None,
        settings: Settings | None = None,
        settle_seconds: float = 1.0,
    ):
        self._client = http_client
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._settle_seconds = settle_seconds

    @property
    def margin_ms(self) -> int:
        return self._settings.XERO_REFRESH_MARGIN_SECONDS * 1000

    def _check_enabled(self) -> None:
        if self._settings.XERO_DISABLED:
            raise IntegrationDisabled()

    # --- Authorization handshake ---

    def authorization_url(self, state: str) -> str:
        self._check_enabled()
        params = {
            "response_type": "code",
            "client_id": self._settings.XERO_CLIENT_ID,
            "redirect_uri": self._settings.redirect_uri,
            "scope": self._settings.XERO_SCOPES,
            "state": state,
        }
        return f"{self._settings.XERO_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> CredentialRecord:
        """Trade an authorization code for the session's first credential."""
        self._check_enabled()
        response = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._settings.redirect_uri,
        })
        if response.status_code != 200:
            logger.error("Authorization code exchange failed: %s", response.status_code)
            raise RefreshFailed(response.status_code, f"Authorization code exchange failed: {response.status_code}")
        return CredentialRecord.from_token_response(response.json())

    async def discover_tenant(self, access_token: str) -> str | None:
        """Return the first tenant the token is connected to, if any."""
        self._check_enabled()
        try:
            response = await self._client.get(
                self._settings.XERO_CONNECTIONS_URL,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self._settings.XERO_HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as exc:
            raise TransientError("Timed out listing Xero connections") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Network error listing Xero connections: {exc}") from exc

        if response.status_code != 200:
            logger.warning("Listing Xero connections failed: %s", response.status_code)
            return None
        tenants = response.json() or []
        if not tenants:
            return None
        return tenants[0].get("tenantId")

    # --- Lifecycle ---

    async def ensure_valid_credential(
        self,
        credential: CredentialRecord | None,
        force: bool = False,
    ) -> tuple[CredentialRecord, bool]:
        """Return ``(credential, rotated)``.

        A credential that outlives the safety margin comes back unchanged with
        no network call. Otherwise exactly one refresh exchange is attempted.
        ``force`` skips the expiry check.
        """
        self._check_enabled()
        if credential is None or not credential.access_token or not credential.refresh_token:
            raise NoCredential()

        if not force and credential.is_usable(self.margin_ms):
            return credential, False

        logger.info("Xero access token expired or expiring soon; refreshing")
        return await self._refresh(credential), True

    async def _refresh(self, credential: CredentialRecord) -> CredentialRecord:
        issued_at = now_ms()
        response = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        })

        if response.status_code == 200:
            await self._record_rotation(credential.refresh_token)
            refreshed = CredentialRecord.from_token_response(response.json(), previous=credential, issued_at_ms=issued_at)
            logger.info("Xero token refreshed; expires in %ss", refreshed.seconds_until_expiry())
            return refreshed

        logger.warning("Xero token refresh rejected: %s", response.status_code)
        if 400 <= response.status_code < 500 and await self._rotated_by_sibling(credential.refresh_token):
            raise RefreshConflict(response.status_code)
        raise RefreshFailed(response.status_code)

    async def _token_request(self, form: dict[str, str]) -> httpx.Response:
        try:
            return await self._client.post(
                self._settings.XERO_TOKEN_URL,
                data=form,
                auth=(self._settings.XERO_CLIENT_ID, self._settings.XERO_CLIENT_SECRET),
                headers={"Accept": "application/json"},
                timeout=self._settings.XERO_HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as exc:
            raise TransientError("Timed out contacting the Xero token endpoint") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"Network error contacting the Xero token endpoint: {exc}") from exc

    async def _record_rotation(self, refresh_token: str) -> None:
        if self._ledger is None:
            return
        try:
            await asyncio.to_thread(self._ledger.record, refresh_token)
        except Exception:
            # The new tokens are valid whether or not the rotation was recorded.
            logger.exception("Failed to record Xero token rotation")

    async def _rotated_by_sibling(self, refresh_token: str) -> bool:
        if self._ledger is None:
            return False
        window = timedelta(seconds=self._settings.XERO_ROTATION_CONFLICT_WINDOW_SECONDS)
        try:
            if await asyncio.to_thread(self._ledger.rotated_within, refresh_token, window):
                return True
            await asyncio.sleep(self._settle_seconds)
            return await asyncio.to_thread(self._ledger.rotated_within, refresh_token, window)
        except Exception:
            logger.exception("Rotation ledger lookup failed; treating refresh failure as terminal")
            return False
