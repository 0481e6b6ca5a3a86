"""Auth dependencies for FastAPI route injection.

End users sign in with Supabase Auth; this service only verifies the access
token they present and looks up application roles.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request

from src.auth.jwt import verify_token
from src.db.client import get_supabase
from src.db.models import ROLE_ADMIN, USER_ROLES
from src.errors import Forbidden


@dataclass
class CurrentUser:
    id: str
    email: str


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization")
    if auth and auth.startswith("Bearer "):
        return auth[7:]
    return None


async def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: authenticate via a Supabase Bearer JWT."""
    token = _extract_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication credentials")

    try:
        payload = verify_token(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token subject")
    request.state.user_id = payload["sub"]
    return CurrentUser(id=payload["sub"], email=payload.get("email", ""))


async def get_user_roles(user: CurrentUser = Depends(get_current_user)) -> set[str]:
    db = get_supabase()
    result = db.table(USER_ROLES).select("role").eq("user_id", user.id).execute()
    return {row["role"] for row in result.data or []}


async def require_admin(
    user: CurrentUser = Depends(get_current_user),
    roles: set[str] = Depends(get_user_roles),
) -> CurrentUser:
    """Admin-only guard. Non-admins get 403, never 404."""
    if ROLE_ADMIN not in roles:
        raise Forbidden()
    return user
