from __future__ import annotations

import hmac
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from authflow.api.error_handling import error_response
from authflow.api.schemas import (
    AccessTokenResponse,
    Customer,
    DirectoryUser,
    InvalidateTokenRequest,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RedirectUrlResponse,
    RevokeSessionRequest,
    SessionListResponse,
)
from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.auth import AuthContext
from authflow.service.errors import AuthenticationError, ForbiddenError
from authflow.service.runtime import get_runtime
from authflow.storage.models import DeviceInfo

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

DEVICE_ID_HEADER = "X-Device-ID"

DIRECTORY_USERS = [
    DirectoryUser(id=1, name="John Doe", email="john@example.com"),
    DirectoryUser(id=2, name="Jane Smith", email="jane@example.com"),
    DirectoryUser(id=3, name="Bob Johnson", email="bob@example.com"),
]

CUSTOMERS = [
    Customer(id=1, name="Acme Corporation", email="contact@acme.com"),
    Customer(id=2, name="Global Industries", email="info@globalindustries.com"),
    Customer(id=3, name="Tech Solutions Ltd", email="hello@techsolutions.com"),
    Customer(id=4, name="Smith & Associates", email="team@smithassociates.com"),
    Customer(id=5, name="Innovation Labs", email="support@innovationlabs.com"),
]


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _device_info(request: Request) -> Optional[DeviceInfo]:
    user_agent = request.headers.get("user-agent")
    if not user_agent:
        return None
    platform = request.headers.get("sec-ch-ua-platform", "").strip('"') or "unknown"
    return DeviceInfo(user_agent=user_agent, platform=platform, os=platform)


def _set_refresh_cookie(response: Response, settings: Settings, refresh_token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=settings.refresh_cookie_httponly,
        secure=settings.is_production,
        samesite="strict",
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.is_production,
        httponly=settings.refresh_cookie_httponly,
        samesite="strict",
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def require_admin_key(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        raise ForbiddenError("token invalidation is disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("admin_key_rejected")
        raise _http_error("unauthorized", "invalid admin key", status_code=401)


# -- password flow --------------------------------------------------------


@router.post("/auth/login", response_model=AccessTokenResponse, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias=DEVICE_ID_HEADER),
):
    runtime = get_runtime()
    pair = runtime.auth.login(body.username, body.password, x_device_id, _device_info(request))
    _set_refresh_cookie(response, runtime.settings, pair.refresh_token)
    return AccessTokenResponse(access_token=pair.access_token)


@router.post("/auth/refresh", response_model=AccessTokenResponse, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias=DEVICE_ID_HEADER),
):
    runtime = get_runtime()
    cookie = request.cookies.get(runtime.settings.refresh_cookie_name)
    pair = runtime.auth.refresh(cookie, x_device_id)
    _set_refresh_cookie(response, runtime.settings, pair.refresh_token)
    return AccessTokenResponse(access_token=pair.access_token)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    x_device_id: Optional[str] = Header(None, alias=DEVICE_ID_HEADER),
):
    runtime = get_runtime()
    try:
        principal = runtime.auth.authenticate(authorization)
    except AuthenticationError as exc:
        # The browser still drops its refresh cookie on a failed logout
        failed = error_response(exc.status_code, exc.message, code=exc.error_code)
        _clear_refresh_cookie(failed, runtime.settings)
        return failed
    runtime.auth.logout(
        authorization.partition(" ")[2].strip() if authorization else None,
        x_device_id or principal.device_id,
        user_id=principal.user_id,
    )
    _clear_refresh_cookie(response, runtime.settings)
    return MessageResponse(message="Logged out successfully")


@router.post(
    "/auth/invalidate-token",
    response_model=MessageResponse,
    dependencies=[Depends(require_admin_key)],
    tags=["auth"],
)
async def invalidate_token(
    body: Optional[InvalidateTokenRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    target = None
    if body is not None:
        target = body.token or body.jti
    if not target and authorization:
        target = authorization.partition(" ")[2].strip() or None
    runtime.auth.invalidate_token(target or "")
    return MessageResponse(message="Token invalidated successfully")


# -- sessions -------------------------------------------------------------


@router.get("/auth/sessions", response_model=SessionListResponse, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return {"sessions": [session.to_public() for session in sessions]}


@router.post("/auth/sessions/revoke", response_model=MessageResponse, tags=["sessions"])
async def revoke_session(
    body: RevokeSessionRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.auth.revoke_session(
        principal.user_id, device_id=body.device_id, session_id=body.session_id
    )
    return MessageResponse(message="Session revoked successfully")


# -- OAuth client side ----------------------------------------------------


@router.get(
    "/auth/oauth/{provider}",
    response_model=RedirectUrlResponse,
    response_model_exclude_none=True,
    tags=["oauth"],
)
async def start_oauth(
    provider: str,
    pkce: bool = Query(False),
    x_device_id: Optional[str] = Header(None, alias=DEVICE_ID_HEADER),
):
    runtime = get_runtime()
    result = runtime.auth.start_oauth(provider, x_device_id, pkce_flow=pkce)
    return RedirectUrlResponse(
        redirect_url=result["redirectUrl"], code_verifier=result.get("codeVerifier")
    )


@router.get("/auth/callback/{provider}", tags=["oauth"])
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
):
    runtime = get_runtime()
    settings = runtime.settings
    device_info = _device_info(request) or DeviceInfo(user_agent="unknown")
    result = await runtime.auth.complete_oauth(provider, code, state, device_info)
    target = f"{settings.frontend_url.rstrip('/')}/auth/callback"
    if not result.ok:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            reason=result.error.reason,
            message=result.error.message,
        )
        query = urlencode({"success": "false", "error": result.error.message})
        return RedirectResponse(f"{target}?{query}", status_code=302)
    pair = result.value
    response = RedirectResponse(
        f"{target}?{urlencode({'success': 'true', 'token': pair.access_token})}",
        status_code=302,
    )
    _set_refresh_cookie(response, settings, pair.refresh_token)
    return response


# -- demo resources -------------------------------------------------------


@router.get("/users/list", response_model=List[DirectoryUser], tags=["users"])
async def list_users(principal: AuthContext = Depends(get_user)):
    logger.info("users_listed", user_id=principal.user_id)
    return DIRECTORY_USERS


@router.get("/users/profile", response_model=ProfileResponse, tags=["users"])
async def profile(principal: AuthContext = Depends(get_user)):
    return ProfileResponse(user_id=principal.user_id, username=principal.username)


@router.get("/customers/list", response_model=List[Customer], tags=["customers"])
async def list_customers(principal: AuthContext = Depends(get_user)):
    logger.info("customers_listed", user_id=principal.user_id)
    return CUSTOMERS
