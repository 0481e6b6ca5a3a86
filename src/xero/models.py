"""Credential record for one authenticated Xero session."""

import time
from dataclasses import dataclass, replace
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CredentialRecord:
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds
    tenant_id: str | None = None

    def is_usable(self, margin_ms: int, at_ms: int | None = None) -> bool:
        """True if the access token outlives ``at_ms`` by more than ``margin_ms``."""
        at_ms = now_ms() if at_ms is None else at_ms
        return self.expires_at > at_ms + margin_ms

    def seconds_until_expiry(self, at_ms: int | None = None) -> int:
        at_ms = now_ms() if at_ms is None else at_ms
        return max(0, round((self.expires_at - at_ms) / 1000))

    def with_tenant(self, tenant_id: str) -> "CredentialRecord":
        return replace(self, tenant_id=tenant_id)

    def expired(self, at_ms: int | None = None) -> "CredentialRecord":
        """Copy whose expiry is one hour in the past (used to exercise refresh)."""
        at_ms = now_ms() if at_ms is None else at_ms
        return replace(self, expires_at=at_ms - 3600 * 1000)

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        previous: "CredentialRecord | None" = None,
        issued_at_ms: int | None = None,
    ) -> "CredentialRecord":
        """Build a record from a token endpoint response.

        A response without ``refresh_token`` keeps the previous one; the tenant
        binding is always carried over.
        """
        issued_at_ms = now_ms() if issued_at_ms is None else issued_at_ms
        refresh_token = payload.get("refresh_token") or (previous.refresh_token if previous else "")
        return cls(
            access_token=payload["access_token"],
            refresh_token=refresh_token,
            expires_at=issued_at_ms + int(payload["expires_in"]) * 1000,
            tenant_id=previous.tenant_id if previous else None,
        )
