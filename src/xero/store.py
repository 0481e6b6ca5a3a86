"""Credential store backed by a signed, HTTP-only cookie.

The whole credential (access token, refresh token, expiry, tenant) lives in a
single cookie so a rotation is persisted in one write: the client can never
hold a new access token next to an already-spent refresh token.
"""

import logging
import secrets
from datetime import timedelta

import jwt
from fastapi import Request
from starlette.responses import Response

from src.config.settings import get_settings
from src.xero.models import CredentialRecord

logger = logging.getLogger(__name__)

_ALGORITHM = "HS256"
_STATE_TTL = timedelta(minutes=15)


def _cookie_options() -> dict:
    settings = get_settings()
    secure = settings.secure_cookies
    return {
        "httponly": True,
        "secure": secure,
        "samesite": "none" if secure else "lax",
        "path": "/",
    }


def encode_credential(credential: CredentialRecord) -> str:
    settings = get_settings()
    payload = {
        "at": credential.access_token,
        "rt": credential.refresh_token,
        "exp_at": credential.expires_at,
        "tid": credential.tenant_id,
    }
    return jwt.encode(payload, settings.SESSION_SECRET, algorithm=_ALGORITHM)


def decode_credential(value: str) -> CredentialRecord | None:
    """Return the credential in a cookie value, or None if it was tampered with."""
    settings = get_settings()
    try:
        payload = jwt.decode(value, settings.SESSION_SECRET, algorithms=[_ALGORITHM])
        return CredentialRecord(
            access_token=payload["at"],
            refresh_token=payload["rt"],
            expires_at=int(payload["exp_at"]),
            tenant_id=payload.get("tid"),
        )
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        logger.warning("Discarding unreadable Xero session cookie")
        return None


def read_credential(request: Request) -> CredentialRecord | None:
    value = request.cookies.get(get_settings().SESSION_COOKIE_NAME)
    if not value:
        return None
    return decode_credential(value)


def persist_credential(response: Response, credential: CredentialRecord) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        encode_credential(credential),
        max_age=int(timedelta(days=settings.REFRESH_TOKEN_LIFETIME_DAYS).total_seconds()),
        **_cookie_options(),
    )


def clear_credential(response: Response) -> None:
    options = _cookie_options()
    response.delete_cookie(
        get_settings().SESSION_COOKIE_NAME,
        path=options["path"],
        secure=options["secure"],
        httponly=True,
        samesite=options["samesite"],
    )


# --- OAuth state (CSRF) cookie ---

def new_state() -> str:
    return secrets.token_hex(16)


def set_state_cookie(response: Response, state: str) -> None:
    response.set_cookie(
        get_settings().STATE_COOKIE_NAME,
        state,
        max_age=int(_STATE_TTL.total_seconds()),
        httponly=True,
        secure=get_settings().secure_cookies,
        samesite="lax",
        path="/",
    )


def state_matches(request: Request, state: str | None) -> bool:
    stored = request.cookies.get(get_settings().STATE_COOKIE_NAME)
    return bool(state and stored and secrets.compare_digest(state, stored))


def clear_state(response: Response) -> None:
    response.delete_cookie(get_settings().STATE_COOKIE_NAME, path="/")
