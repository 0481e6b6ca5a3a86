"""Verification of end-user access tokens issued by Supabase Auth."""

import jwt

from src.config.settings import get_settings


def verify_token(token: str) -> dict:
    """Decode and validate a Supabase JWT. Raises jwt.ExpiredSignatureError or jwt.InvalidTokenError."""
    settings = get_settings()
    return jwt.decode(
        token,
        settings.SUPABASE_JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.SUPABASE_JWT_AUDIENCE,
    )
