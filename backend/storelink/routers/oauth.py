"""OAuth 2.0 connect / callback / disconnect endpoints.

WHAT:
    GET    /connect/{platform}   start authorization (staff user required)
    GET    /callback/{platform}  finish authorization, redirect to the frontend
    DELETE /disconnect/{uid}     terminal lifecycle transition

WHY:
    The browser session cookie carries a random nonce the OAuth state is
    bound to, so a callback opened in another browser (or a replayed link)
    is refused even with a valid state value.

REFERENCES:
    - Shopify OAuth: https://shopify.dev/docs/apps/auth/oauth
    - Squarespace OAuth: https://developers.squarespace.com/oauth
    - storelink/services/oauth_service.py
"""

import logging
import secrets
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from storelink.adapters import AdapterProvider, get_adapter_provider
from storelink.adapters.shopify import normalize_shop_domain, validate_shop_domain
from storelink.database import get_db
from storelink.deps import Settings, get_current_user, get_settings
from storelink.exceptions import StorelinkError
from storelink.models import PlatformEnum, Store, User
from storelink.services import oauth_service, store_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter(tags=["OAuth"])

SESSION_NONCE_KEY = "storelink_oauth_nonce"

_REQUIRED_CONFIG = {
    PlatformEnum.shopify: ("SHOPIFY_API_KEY", "SHOPIFY_API_SECRET", "SHOPIFY_OAUTH_REDIRECT_URI"),
    PlatformEnum.squarespace: (
        "SQUARESPACE_CLIENT_ID",
        "SQUARESPACE_CLIENT_SECRET",
        "SQUARESPACE_OAUTH_REDIRECT_URI",
    ),
}


# =============================================================================
# HELPERS
# =============================================================================

def _parse_platform(platform: str) -> PlatformEnum:
    try:
        return PlatformEnum(platform)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unsupported platform: {platform}")


def _validate_config(platform: PlatformEnum, settings: Settings) -> None:
    """Raises HTTPException 503 if the platform's OAuth app is not configured."""
    missing: List[str] = [name for name in _REQUIRED_CONFIG[platform] if not getattr(settings, name)]
    if missing:
        logger.error("[OAUTH] %s missing required environment variables: %s", platform.value, missing)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{platform.value.title()} integration not configured. Missing: {', '.join(missing)}",
        )


def _redirect_uri(platform: PlatformEnum, settings: Settings) -> str:
    if platform == PlatformEnum.shopify:
        return settings.SHOPIFY_OAUTH_REDIRECT_URI
    return settings.SQUARESPACE_OAUTH_REDIRECT_URI


def _session_nonce(request: Request) -> str:
    nonce = request.session.get(SESSION_NONCE_KEY)
    if not nonce:
        nonce = secrets.token_urlsafe(32)
        request.session[SESSION_NONCE_KEY] = nonce
    return nonce


def _error_redirect(settings: Settings, platform: PlatformEnum, message: str) -> RedirectResponse:
    query = urlencode({"connect": "error", "platform": platform.value, "message": message})
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/stores?{query}", status_code=status.HTTP_302_FOUND)


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/connect/{platform}")
async def connect(
    platform: str,
    request: Request,
    shop: Optional[str] = Query(None, description="Shopify store domain ('mystore' or 'mystore.myshopify.com')"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    """Redirect the staff user to the platform consent screen."""
    settings = get_settings()
    platform_enum = _parse_platform(platform)
    _validate_config(platform_enum, settings)

    return_context = {}
    if platform_enum == PlatformEnum.shopify:
        if not shop:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="shop parameter is required")
        shop_domain = normalize_shop_domain(shop)
        if not validate_shop_domain(shop_domain):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid Shopify store domain: {shop_domain}. Expected format: mystore.myshopify.com",
            )
        return_context["domain"] = shop_domain

    url = oauth_service.begin_authorization(
        db,
        adapters(platform_enum),
        user=current_user,
        session_key=_session_nonce(request),
        redirect_uri=_redirect_uri(platform_enum, settings),
        return_context=return_context,
    )
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/callback/{platform}")
async def callback(
    platform: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    shop: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    adapters: AdapterProvider = Depends(get_adapter_provider),
):
    """Complete authorization and send the browser back to the frontend.

    Every failure ends in a redirect carrying a readable message; nothing is
    persisted unless the whole flow succeeded.
    """
    settings = get_settings()
    platform_enum = _parse_platform(platform)
    _validate_config(platform_enum, settings)

    try:
        store = await oauth_service.complete_authorization(
            db,
            adapters(platform_enum),
            returned_state=state,
            session_key=request.session.get(SESSION_NONCE_KEY),
            code=code,
            redirect_uri=_redirect_uri(platform_enum, settings),
            domain=normalize_shop_domain(shop) if shop and platform_enum == PlatformEnum.shopify else None,
            error=error,
            error_description=error_description,
            callback_params=dict(request.query_params),
        )
    except StorelinkError as exc:
        logger.error("[OAUTH] %s callback failed: %s", platform_enum.value, exc.message)
        return _error_redirect(settings, platform_enum, exc.to_user_message())

    # The nonce is single use along with the state it protected
    request.session.pop(SESSION_NONCE_KEY, None)
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/stores/{store.uid}?connect=success",
        status_code=status.HTTP_302_FOUND,
    )


@router.delete("/disconnect/{uid}")
def disconnect(
    uid: str,
    purge_data: bool = Query(True, description="Delete mirrored products and orders with the store"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    store = (
        db.query(Store)
        .filter(Store.uid == uid, Store.organization_id == current_user.organization_id)
        .first()
    )
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    if store.disconnected_at is not None and not purge_data:
        return {"uid": uid, "state": "disconnected", "purged": False}

    store_lifecycle.disconnect(db, store, purge_data=purge_data)
    return {"uid": uid, "state": "disconnected", "purged": purge_data}
