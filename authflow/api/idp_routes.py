from __future__ import annotations

import hmac
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from authflow.api.error_handling import oauth_error_response
from authflow.api.schemas import MessageResponse, OAuthTokenResponse, OAuthUserInfoResponse
from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import AccessDenied, InvalidRequest
from authflow.service.oauth_provider import AuthorizationRequest, TokenRequest
from authflow.service.runtime import get_runtime

logger = get_logger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter(prefix="/oauth")

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _authorization_request(values: Any) -> AuthorizationRequest:
    def _get(name: str) -> Optional[str]:
        value = values.get(name)
        return str(value) if value not in (None, "") else None

    return AuthorizationRequest(
        response_type=_get("response_type"),
        client_id=_get("client_id"),
        redirect_uri=_get("redirect_uri"),
        provider=_get("provider"),
        scope=_get("scope") or "",
        state=_get("state"),
        nonce=_get("nonce"),
        code_challenge=_get("code_challenge"),
        code_challenge_method=_get("code_challenge_method"),
        prompt=_get("prompt"),
    )


def _set_sso_cookie(response: Response, settings: Settings, session_id: str) -> None:
    response.set_cookie(
        settings.sso_cookie_name,
        session_id,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.sso_session_ttl_seconds,
        path="/oauth",
    )


@router.get("/authorize", tags=["idp"])
async def authorize(request: Request):
    runtime = get_runtime()
    auth_request = _authorization_request(request.query_params)
    result = runtime.oauth_provider.authorize(auth_request)
    if not result.ok:
        logger.warning(
            "idp_authorize_rejected",
            error_code=result.error.error,
            message=result.error.description,
        )
        return oauth_error_response(result.error)

    cookie = request.cookies.get(runtime.settings.sso_cookie_name)
    silent = runtime.oauth_provider.resume_sso(result.value, cookie)
    if silent:
        return RedirectResponse(silent, status_code=302)

    return templates.TemplateResponse(
        request,
        "authorize.html",
        {
            "provider": auth_request.provider,
            "scopes": auth_request.scopes,
            "fields": auth_request.to_form(),
        },
    )


@router.post("/authorize/confirm", tags=["idp"])
async def confirm(request: Request):
    runtime = get_runtime()
    form = await request.form()
    auth_request = _authorization_request(form)
    decision = str(form.get("decision") or "approve")
    result = runtime.oauth_provider.confirm(
        auth_request,
        decision,
        sso_session_id=request.cookies.get(runtime.settings.sso_cookie_name),
    )
    if not result.ok:
        return oauth_error_response(result.error)
    outcome = result.value
    response = RedirectResponse(outcome.redirect_url, status_code=302)
    if outcome.sso_session_id:
        _set_sso_cookie(response, runtime.settings, outcome.sso_session_id)
    return response


@router.post("/token", response_model=OAuthTokenResponse, tags=["idp"])
async def token(request: Request):
    runtime = get_runtime()
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            payload = await request.json()
        else:
            payload = dict(await request.form())
    except ValueError:
        return oauth_error_response(InvalidRequest("Malformed request body"))
    if not isinstance(payload, dict):
        return oauth_error_response(InvalidRequest("Malformed request body"))

    result = runtime.oauth_provider.token(TokenRequest.from_mapping(payload))
    if not result.ok:
        logger.warning(
            "idp_token_rejected",
            error_code=result.error.error,
            message=result.error.description,
            provider=payload.get("provider"),
        )
        return oauth_error_response(result.error)
    return JSONResponse(result.value, headers=_NO_STORE)


@router.get("/userinfo", response_model=OAuthUserInfoResponse, tags=["idp"])
async def userinfo(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    result = runtime.oauth_provider.userinfo(authorization)
    if not result.ok:
        return oauth_error_response(result.error)
    return result.value


@router.post("/logout", response_model=MessageResponse, tags=["idp"])
async def sso_logout(request: Request, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    runtime.sso_sessions.revoke(request.cookies.get(settings.sso_cookie_name))
    response.delete_cookie(settings.sso_cookie_name, path="/oauth")
    return MessageResponse(message="Signed out of identity provider")


@router.get("/sessions/stats", tags=["idp"])
async def sso_stats(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
    user_id: Optional[str] = Query(None),
):
    runtime = get_runtime()
    expected = runtime.settings.admin_api_key
    if not expected or not hmac.compare_digest((x_admin_key or "").encode(), expected.encode()):
        return oauth_error_response(AccessDenied("Admin key required", status_code=403))
    body: dict[str, Any] = {"stats": runtime.sso_sessions.stats()}
    if user_id:
        body["sessions"] = [
            {
                "provider": session.provider,
                "createdAt": session.created_at.isoformat(),
                "lastUsedAt": session.last_used_at.isoformat(),
                "expiresAt": session.expires_at.isoformat(),
            }
            for session in runtime.sso_sessions.list_for_user(user_id)
        ]
    return body
