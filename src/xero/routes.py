"""Xero endpoints: OAuth handshake, session status and API pass-through."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from starlette.responses import JSONResponse, RedirectResponse

from src.auth.dependencies import CurrentUser, get_current_user
from src.config.settings import get_settings
from src.errors import NoCredential, TransientError
from src.xero.client import GatewayResult, XeroGateway, get_gateway, get_token_manager
from src.xero.models import now_ms
from src.xero.store import (
    clear_credential,
    clear_state,
    new_state,
    persist_credential,
    read_credential,
    set_state_cookie,
    state_matches,
)
from src.xero.tokens import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/xero", tags=["Xero"])


def _respond(result: GatewayResult, content) -> JSONResponse:
    """JSON response that carries a rotated credential back to the browser."""
    response = JSONResponse({"status": "success", "data": content})
    if result.rotated:
        persist_credential(response, result.credential)
    return response


# --- OAuth handshake ---

@router.get("/auth", summary="Start Xero authorization", description="Redirect to Xero's consent screen with a fresh state value.")
async def authorize(tokens: TokenManager = Depends(get_token_manager)):
    state = new_state()
    response = RedirectResponse(tokens.authorization_url(state), status_code=307)
    set_state_cookie(response, state)
    return response


@router.get("/callback", summary="Xero authorization callback", description="Verify state, exchange the code, bind the first tenant and store the credential.")
async def callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    tokens: TokenManager = Depends(get_token_manager),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Xero authorization denied: {error}")
    if not state_matches(request, state):
        logger.error("Xero callback state verification failed")
        raise HTTPException(status_code=400, detail="Invalid state")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")

    credential = await tokens.exchange_code(code)
    try:
        tenant_id = await tokens.discover_tenant(credential.access_token)
    except TransientError:
        # Tokens are good; the session reports MissingTenant until reauthorized.
        logger.exception("Could not list Xero connections during callback")
        tenant_id = None
    if tenant_id:
        credential = credential.with_tenant(tenant_id)
        logger.info("Bound Xero session to tenant %s", tenant_id)
    else:
        logger.warning("Xero authorization completed without a tenant")

    settings = get_settings()
    response = RedirectResponse(f"{settings.BASE_URL.rstrip('/')}{settings.XERO_POST_AUTH_REDIRECT_PATH}", status_code=303)
    persist_credential(response, credential)
    clear_state(response)
    return response


# --- Session ---

@router.get("/token-status", summary="Credential status", description="Report what the session holds and when the access token expires. No network call.")
async def token_status(request: Request, user: CurrentUser = Depends(get_current_user)):
    credential = read_credential(request)
    now = now_ms()
    if credential is None:
        return {"status": "success", "data": {
            "has_access_token": False,
            "has_refresh_token": False,
            "has_tenant_id": False,
            "token_expiry": None,
            "expires_in": 0,
            "is_expired": True,
        }}
    expires_in = credential.seconds_until_expiry(now)
    return {"status": "success", "data": {
        "has_access_token": bool(credential.access_token),
        "has_refresh_token": bool(credential.refresh_token),
        "has_tenant_id": bool(credential.tenant_id),
        "token_expiry": credential.expires_at,
        "expires_in": expires_in,
        "expires_in_minutes": round(expires_in / 60),
        "is_expired": credential.expires_at <= now,
    }}


@router.post("/expire-token", summary="Expire the access token", description="Testing aid: move the stored expiry into the past so the next call refreshes.")
async def expire_token(request: Request, user: CurrentUser = Depends(get_current_user)):
    credential = read_credential(request)
    if credential is None:
        raise NoCredential()
    response = JSONResponse({"status": "success", "data": {"message": "Token expired for testing"}})
    persist_credential(response, credential.expired())
    return response


@router.post("/logout", summary="Forget the Xero session", description="Clear the stored credential. A new authorization is required afterwards.")
async def logout(user: CurrentUser = Depends(get_current_user)):
    response = JSONResponse({"status": "success", "data": {"message": "Disconnected from Xero"}})
    clear_credential(response)
    return response


# --- API pass-through ---

@router.get("/test-connection", summary="Test the Xero connection", description="Fetch the connected organisation.")
async def test_connection(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    gateway: XeroGateway = Depends(get_gateway),
):
    result = await gateway.call(read_credential(request), "Organisations")
    return _respond(result, result.data)


@router.get("/items", summary="List Xero items", description="Fetch all inventory items from Xero.")
async def items(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    gateway: XeroGateway = Depends(get_gateway),
):
    result = await gateway.call(read_credential(request), "Items")
    return _respond(result, result.data)


def _item_list(data) -> list[dict]:
    """``Items`` from a Xero response, tolerating unexpected shapes."""
    items = data.get("Items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


@router.get("/filtered-items", summary="List billable items", description="Items whose purchase account code is in the configured set, shaped for a combo box.")
async def filtered_items(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    gateway: XeroGateway = Depends(get_gateway),
):
    result = await gateway.call(read_credential(request), "Items")
    codes = get_settings().item_account_codes
    formatted = [
        {
            "value": item.get("ItemID"),
            "label": item.get("Name"),
            "code": item.get("Code"),
            "description": item.get("Description"),
            "account_code": item["PurchaseDetails"]["AccountCode"],
        }
        for item in _item_list(result.data)
        if (item.get("PurchaseDetails") or {}).get("AccountCode") in codes
    ]
    logger.info("Found %d Xero items with account codes %s", len(formatted), sorted(codes))
    return _respond(result, {"items": formatted})
