"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    SUPABASE_URL: str
    SUPABASE_SERVICE_ROLE_KEY: str
    SUPABASE_JWT_SECRET: str
    SUPABASE_JWT_AUDIENCE: str = "authenticated"

    # Public URL of this service, used for OAuth redirects and cookie flags
    BASE_URL: str = "http://localhost:8000"

    # Xero OAuth2
    XERO_CLIENT_ID: str
    XERO_CLIENT_SECRET: str
    XERO_SCOPES: str = "offline_access accounting.transactions accounting.settings"
    XERO_AUTHORIZE_URL: str = "https://login.xero.com/identity/connect/authorize"
    XERO_TOKEN_URL: str = "https://identity.xero.com/connect/token"
    XERO_CONNECTIONS_URL: str = "https://api.xero.com/connections"
    XERO_API_BASE_URL: str = "https://api.xero.com/api.xro/2.0/"
    XERO_HTTP_TIMEOUT_SECONDS: float = 10.0
    XERO_REFRESH_MARGIN_SECONDS: int = 300
    XERO_ROTATION_CONFLICT_WINDOW_SECONDS: int = 120
    XERO_DISABLED: bool = False
    XERO_ITEM_ACCOUNT_CODES: str = "430,431,432"
    XERO_POST_AUTH_REDIRECT_PATH: str = "/xero-test"

    # Credential cookie
    SESSION_SECRET: str
    SESSION_COOKIE_NAME: str = "xero_session"
    STATE_COOKIE_NAME: str = "xero_state"
    REFRESH_TOKEN_LIFETIME_DAYS: int = 60

    # Cloudflare R2 (S3 API)
    R2_ACCOUNT_ID: str
    R2_ACCESS_KEY_ID: str
    R2_SECRET_ACCESS_KEY: str
    R2_BUCKET_NAME: str
    ATTACHMENT_PREFIX: str = "attachments/"
    ATTACHMENT_URL_TTL_SECONDS: int = 3600
    ATTACHMENT_WEBHOOK_SECRET: str = ""

    # Reconciliation
    RECONCILE_GRACE_MINUTES: int = 10
    RECONCILE_MAX_WORKERS: int = 4
    RECONCILE_MIN_DELETE_INTERVAL_MS: int = 50
    RECONCILE_INTERVAL_MINUTES: int = 0

    LOG_LEVEL: str = "INFO"

    @property
    def r2_endpoint_url(self) -> str:
        return f"https://{self.R2_ACCOUNT_ID}.r2.cloudflarestorage.com"

    @property
    def redirect_uri(self) -> str:
        return f"{self.BASE_URL.rstrip('/')}/api/xero/callback"

    @property
    def secure_cookies(self) -> bool:
        return self.BASE_URL.startswith("https://")

    @property
    def item_account_codes(self) -> set[str]:
        return {c.strip() for c in self.XERO_ITEM_ACCOUNT_CODES.split(",") if c.strip()}

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache()
def get_settings() -> Settings:
    return Settings()
