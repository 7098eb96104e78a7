"""
Connector API routes — OAuth connect/callback, status, provider settings,
disconnect, and the integrations overview.

Route prefixes: /api/acuity, /api/square, /api/integrations
"""

from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import (
    get_credential_store,
    get_registry,
    get_settings,
    get_state_signer,
    get_token_manager,
)
from api.middleware import error_response
from auth.dependencies import get_current_user_id, get_optional_user_id
from config.settings import Settings
from connectors.base import BaseConnector, ProviderError
from connectors.credential_store import CredentialStore
from connectors.oauth_state import (
    InvalidOAuthState,
    OAuthStateSigner,
    code_challenge_for,
    cookie_name,
)
from connectors.registry import ConnectorRegistry
from connectors.token_manager import TokenManager
from utils.schemas import CalendarSelection, LocationSelection

logger = logging.getLogger(__name__)

acuity_router = APIRouter(prefix="/acuity", tags=["acuity"])
square_router = APIRouter(prefix="/square", tags=["square"])
router = APIRouter(prefix="/integrations", tags=["integrations"])


# ── Shared OAuth flow ──────────────────────────────────────────────────


def _connector(registry: ConnectorRegistry, provider: str) -> BaseConnector:
    connector = registry.get(provider)
    if connector is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, f"Provider '{provider}' not available")
    return connector


def _is_mobile(request: Request) -> bool:
    if request.query_params.get("mobile") == "true":
        return True
    return "Expo" in request.headers.get("user-agent", "")


def _begin_authorization(
    provider: str,
    request: Request,
    user_id: Optional[str],
    registry: ConnectorRegistry,
    signer: OAuthStateSigner,
    settings: Settings,
) -> RedirectResponse:
    """
    Start the OAuth flow: sign a pending authorization into an httpOnly
    cookie and redirect to the provider's consent page.
    """
    if user_id is None:
        return RedirectResponse(f"{settings.site_url}/login", status_code=status.HTTP_302_FOUND)

    connector = _connector(registry, provider)
    if not connector.is_configured():
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            f"{connector.display_name} is not configured",
        )

    pending = signer.begin(
        provider,
        user_id,
        return_url=request.query_params.get("return_url"),
        use_pkce=connector.uses_pkce,
        is_mobile=_is_mobile(request),
    )
    challenge = code_challenge_for(pending.code_verifier) if pending.code_verifier else None

    response = RedirectResponse(
        connector.get_auth_url(pending.state, challenge),
        status_code=status.HTTP_302_FOUND,
    )
    response.set_cookie(
        cookie_name(provider),
        signer.sign(pending),
        max_age=signer.ttl_seconds,
        httponly=True,
        secure=settings.environment == "production",
        samesite="lax",
        path="/",
    )
    return response


async def _complete_authorization(
    provider: str,
    request: Request,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str],
    error_description: Optional[str],
    registry: ConnectorRegistry,
    signer: OAuthStateSigner,
    tokens: TokenManager,
    settings: Settings,
) -> Response:
    """
    OAuth callback — verify the pending state against the query ``state``,
    exchange the code, store the credential, then redirect (web) or show a
    small confirmation page (mobile).
    """
    if error:
        return error_response(status.HTTP_400_BAD_REQUEST, error, error_description)
    if not code or not state:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing code/state")

    try:
        pending = signer.verify(
            request.cookies.get(cookie_name(provider)), provider=provider, state=state
        )
    except InvalidOAuthState as exc:
        logger.warning("OAuth callback for %s rejected: %s", provider, exc)
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(exc))

    connector = _connector(registry, provider)
    try:
        grant = await connector.handle_callback(code, pending.code_verifier)
    except ProviderError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        if pending.is_mobile:
            return HTMLResponse(
                _callback_html(
                    success=False,
                    message=f"Connection failed: {exc}",
                    provider=provider,
                ),
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        return error_response(status.HTTP_400_BAD_REQUEST, "Token exchange failed", exc.body or str(exc))

    credential = await tokens.complete_authorization(pending.user_id, provider, grant)
    logger.info(
        "OAuth connected: user=%s provider=%s account=%s",
        pending.user_id, provider, credential.account_label or credential.account_id,
    )

    if pending.is_mobile:
        response: Response = HTMLResponse(
            _callback_html(
                success=True,
                message=f"{connector.display_name} connected. You can close this tab.",
                provider=provider,
            )
        )
    else:
        response = RedirectResponse(
            f"{settings.site_url}{pending.return_url}", status_code=status.HTTP_302_FOUND
        )
    response.delete_cookie(cookie_name(provider), path="/")
    return response


async def _status(store: CredentialStore, user_id: str, provider: str) -> Any:
    try:
        credential = await store.get(user_id, provider)
    except SQLAlchemyError:
        logger.exception("Status check failed for %s/%s", provider, user_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"connected": False, "error": "Failed to check status"},
        )
    if credential is None:
        return {"connected": False}
    return {
        "connected": True,
        "account_id": credential.account_id,
        "account_label": credential.account_label,
        "connected_at": credential.connected_at,
        "needs_reconnect": credential.status != "active",
        "error": credential.error_message,
    }


async def _valid_credential(tokens: TokenManager, user_id: str, provider: str, label: str):
    credential = await tokens.get_valid_credential(user_id, provider)
    if credential is None:
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            f"No {label} connection found or token refresh failed",
        )
    return credential


# ── Acuity ─────────────────────────────────────────────────────────────


@acuity_router.get("/authorize")
async def acuity_authorize(
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    return _begin_authorization("acuity", request, user_id, registry, signer, settings)


@acuity_router.get("/callback")
async def acuity_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    tokens: TokenManager = Depends(get_token_manager),
    settings: Settings = Depends(get_settings),
) -> Response:
    return await _complete_authorization(
        "acuity", request, code, state, error, error_description,
        registry, signer, tokens, settings,
    )


@acuity_router.get("/status")
async def acuity_status(
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
):
    return await _status(store, user_id, "acuity")


@acuity_router.post("/refresh")
async def acuity_refresh(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    store: CredentialStore = Depends(get_credential_store),
) -> Dict[str, Any]:
    """Force a token refresh regardless of expiry."""
    if await store.get(user_id, "acuity") is None:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No Acuity connection found")

    credential = await tokens.force_refresh(user_id, "acuity")
    if credential is None:
        failed = await store.get(user_id, "acuity")
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Failed to refresh token",
                "details": failed.error_message if failed else None,
            },
        )
    return {"success": True, "expires_at": credential.expires_at}


@acuity_router.get("/calendars")
async def acuity_calendars(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    credential = await _valid_credential(tokens, user_id, "acuity", "Acuity")
    connector = _connector(registry, "acuity")
    try:
        calendars = await connector.list_calendars(credential.access_token)
    except ProviderError as exc:
        raise HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Failed to fetch calendars", "details": str(exc)},
        )
    return {
        "calendars": [{"id": c["id"], "name": c["name"]} for c in calendars],
        "selected": credential.provider_meta.get("calendar"),
    }


@acuity_router.post("/calendar")
async def acuity_select_calendar(
    body: CalendarSelection,
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
) -> Dict[str, Any]:
    """Choose which Acuity calendar availability is read from (matched by name)."""
    calendar = body.calendar.strip()
    if await store.update_meta(user_id, "acuity", calendar=calendar) is None:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No Acuity connection found")
    return {"success": True, "calendar": calendar}


@acuity_router.post("/disconnect")
async def acuity_disconnect(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, Any]:
    result = await tokens.disconnect(user_id, "acuity")
    return {"success": True, "result": result.value}


# ── Square ─────────────────────────────────────────────────────────────


@square_router.get("/connect")
async def square_connect(
    request: Request,
    user_id: Optional[str] = Depends(get_optional_user_id),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    return _begin_authorization("square", request, user_id, registry, signer, settings)


@square_router.get("/callback")
async def square_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    registry: ConnectorRegistry = Depends(get_registry),
    signer: OAuthStateSigner = Depends(get_state_signer),
    tokens: TokenManager = Depends(get_token_manager),
    settings: Settings = Depends(get_settings),
) -> Response:
    return await _complete_authorization(
        "square", request, code, state, error, error_description,
        registry, signer, tokens, settings,
    )


@square_router.get("/status")
async def square_status(
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
):
    result = await _status(store, user_id, "square")
    if isinstance(result, dict) and result.get("connected"):
        result["merchant_id"] = result["account_id"]
    return result


@square_router.get("/locations")
async def square_locations(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, List[Dict[str, Any]]]:
    """List the merchant's locations with the caller's selection flags."""
    credential = await _valid_credential(tokens, user_id, "square", "Square")
    connector = _connector(registry, "square")
    try:
        locations = await connector.list_locations(credential.access_token)
    except ProviderError as exc:
        raise HTTPException(
            status.HTTP_502_BAD_GATEWAY,
            detail={"error": "Square locations fetch failed", "details": exc.body or str(exc)},
        )

    selected = set(credential.provider_meta.get("location_ids") or [])
    payload = [
        {
            "location_id": loc["id"],
            "name": loc.get("name"),
            "timezone": loc.get("timezone"),
            "status": loc.get("status"),
            "is_active": loc.get("status") == "ACTIVE",
            "selected": loc["id"] in selected,
        }
        for loc in locations
    ]
    payload.sort(key=lambda loc: loc["name"] or "")
    return {"locations": payload}


@square_router.post("/locations")
async def square_select_locations(
    body: LocationSelection,
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
) -> Dict[str, Any]:
    """Replace the selected location ids; an empty list means all active locations."""
    location_ids = list(dict.fromkeys(i for i in body.location_ids if i))
    if await store.update_meta(user_id, "square", location_ids=location_ids) is None:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No Square connection found")
    return {"success": True, "selected": location_ids}


@square_router.post("/disconnect")
async def square_disconnect(
    user_id: str = Depends(get_current_user_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, Any]:
    result = await tokens.disconnect(user_id, "square")
    return {"success": True, "result": result.value}


# ── Integrations overview ──────────────────────────────────────────────


@router.get("/providers")
async def list_providers(
    registry: ConnectorRegistry = Depends(get_registry),
) -> List[Dict[str, Any]]:
    """
    List all booking providers and their configuration status.
    No auth required — used by the front end to show available integrations.
    """
    return registry.list_providers()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    store: CredentialStore = Depends(get_credential_store),
) -> List[Dict[str, Any]]:
    """List the caller's provider connections (no tokens exposed)."""
    return [
        {
            "provider": c.provider,
            "account_id": c.account_id,
            "account_label": c.account_label,
            "status": c.status,
            "scopes": c.scopes,
            "connected_at": c.connected_at,
            "expires_at": c.expires_at,
            "last_refreshed": c.last_refreshed,
            "error_message": c.error_message,
            "provider_meta": c.provider_meta,
        }
        for c in await store.list_for_user(user_id)
    ]


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the in-app browser after a mobile connect.
    Posts a message to the opener (if any) and tries to close itself.
    """
    status_mark = "✓" if success else "✕"
    status_text = "Connected" if success else "Failed"
    color = "#22c55e" if success else "#ef4444"
    safe_message = html.escape(message)
    safe_provider = html.escape(provider)

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{safe_provider} {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{ text-align: center; padding: 40px; max-width: 400px; }}
        h1 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #6b7280; font-size: 0.9rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{status_mark} {status_text}</h1>
        <p>{safe_message}</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({{
                type: 'oauth-callback',
                provider: '{safe_provider}',
                success: {'true' if success else 'false'},
            }}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
