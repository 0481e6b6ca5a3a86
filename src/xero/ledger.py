"""Server-side record of refresh tokens this service has already exchanged.

Xero refresh tokens are single-use. When two requests from one session race
to refresh, the loser's exchange is rejected exactly as if the session had
been revoked. The ledger lets the loser tell the two apart: if the token it
submitted shows up here as recently rotated, a sibling request won and the
browser already holds (or is about to receive) fresh tokens.

Only SHA-256 hashes are stored; raw tokens never leave the cookie.
"""

import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from src.config.settings import get_settings
from src.db.client import get_supabase
from src.db.models import XERO_TOKEN_ROTATIONS


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RotationLedger(ABC):
    @abstractmethod
    def record(self, refresh_token: str) -> None:
        """Note that ``refresh_token`` has just been exchanged successfully."""
        ...

    @abstractmethod
    def rotated_within(self, refresh_token: str, window: timedelta) -> bool:
        """True if ``refresh_token`` was exchanged within the last ``window``."""
        ...


class SupabaseRotationLedger(RotationLedger):
    """Ledger in the ``xero_token_rotations`` table.

    Entries older than ``retention`` are never read, so each write also
    deletes them and the table stays bounded by the recent rotation rate.
    """

    def __init__(self, retention: timedelta):
        self._retention = retention

    def record(self, refresh_token: str) -> None:
        db = get_supabase()
        now = datetime.now(timezone.utc)
        db.table(XERO_TOKEN_ROTATIONS).upsert({
            "token_hash": hash_token(refresh_token),
            "rotated_at": now.isoformat(),
        }).execute()
        db.table(XERO_TOKEN_ROTATIONS).delete().lt("rotated_at", (now - self._retention).isoformat()).execute()

    def rotated_within(self, refresh_token: str, window: timedelta) -> bool:
        db = get_supabase()
        since = (datetime.now(timezone.utc) - window).isoformat()
        result = (
            db.table(XERO_TOKEN_ROTATIONS)
            .select("token_hash")
            .eq("token_hash", hash_token(refresh_token))
            .gte("rotated_at", since)
            .execute()
        )
        return bool(result.data)


_ledger: RotationLedger | None = None


def get_rotation_ledger() -> RotationLedger:
    global _ledger
    if _ledger is None:
        window = timedelta(seconds=get_settings().XERO_ROTATION_CONFLICT_WINDOW_SECONDS)
        _ledger = SupabaseRotationLedger(retention=window)
    return _ledger
