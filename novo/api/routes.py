from __future__ import annotations

import json
import secrets
from html import escape
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse

from novo.api.schemas import (
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
)
from novo.config import Settings
from novo.logging import get_logger
from novo.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    OAuthError,
    RateLimitedError,
    ServiceError,
)
from novo.service.oauth import OAUTH_PROVIDERS
from novo.service.runtime import Runtime, check_rate_limit, get_runtime
from novo.storage.models import Account

logger = get_logger(__name__)

router = APIRouter()


async def _enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError(
            "rate limit exceeded",
            detail={"retry_after_seconds": max(1, reset_seconds), "limit": limit},
        )


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        provider=account.provider,
        is_premium=account.is_premium,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _set_refresh_cookie(response: Response, settings: Settings, refresh_token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    # Cookie is path-scoped; deletion must use the same path
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


async def get_current_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a password account. No credentials are issued; the caller logs in next.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    account = runtime.auth.register(body.email, body.name, body.password)
    return Envelope(status="ok", data=_account_to_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Starts a new refresh session (invalidating the previous one for this
    account), sets the refresh cookie and returns the access credential.

    Raises:
        400: If the account signs in through a federated provider
        401: If the credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    account, issued = runtime.auth.login(body.email, body.password)
    _set_refresh_cookie(response, runtime.settings, issued.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=issued.access_token,
            expires_at=issued.access_expires_at,
            user=_account_to_response(account),
        ),
    )


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request):
    """Exchange the refresh cookie for a new access credential.

    The refresh cookie is left untouched and keeps its original expiry.
    """
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.refresh_cookie_name)
    account, access_token, expires_at = runtime.auth.refresh(token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=access_token,
            expires_at=expires_at,
            user=_account_to_response(account),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: LogoutRequest,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    caller_id: Optional[str] = None
    if runtime.auth.extract_bearer(authorization):
        try:
            caller_id = runtime.auth.authenticate(authorization).id
        except (AuthenticationError, ForbiddenError) as exc:
            # A stale bearer does not block clearing the session
            logger.info("logout_bearer_ignored", error_code=exc.error_code)
    runtime.auth.logout(body.email, caller_account_id=caller_id)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    account: Account = Depends(get_current_account),
):
    """Change the password and revoke every refresh session of the account."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"password:change:{account.id}", 5, 300)
    runtime.auth.change_password(account, body.current_password, body.new_password)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(account: Account = Depends(get_current_account)):
    return Envelope(status="ok", data=_account_to_response(account))


@router.delete("/users/me", response_model=Envelope, tags=["users"])
async def delete_me(response: Response, account: Account = Depends(get_current_account)):
    runtime = get_runtime()
    runtime.auth.delete_account(account.id)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "account deleted"})


async def _start_provider_login(provider: str) -> RedirectResponse:
    runtime = get_runtime()
    url = await runtime.auth.start_oauth(provider)
    logger.info("oauth_redirect", provider=provider)
    return RedirectResponse(url, status_code=302)


@router.get("/auth/google", tags=["oauth"])
async def google_login():
    return await _start_provider_login("google")


@router.get("/auth/github", tags=["oauth"])
async def github_login():
    return await _start_provider_login("github")


_CALLBACK_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<p>{title}</p>
<script nonce="{nonce}">
(function () {{
  var payload = {payload};
  var targetOrigin = {target_origin};
  var handoff = {handoff};
  if (window.opener && !window.opener.closed) {{
    window.opener.postMessage(payload, targetOrigin);
    window.close();
  }} else if (handoff) {{
    window.location.replace(targetOrigin + "/oauth-complete?" + {handoff_query});
  }}
}})();
</script>
</body>
</html>
"""


def _script_json(value: Any) -> str:
    # Safe to embed inside a <script> element
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def _callback_page(
    settings: Settings,
    payload: Dict[str, Any],
    *,
    status_code: int = 200,
    handoff: Optional[str] = None,
) -> HTMLResponse:
    nonce = secrets.token_urlsafe(16)
    title = "Signed in" if payload.get("success") else "Sign-in failed"
    html = _CALLBACK_PAGE.format(
        title=escape(title),
        nonce=nonce,
        payload=_script_json(payload),
        target_origin=_script_json(settings.frontend_origin),
        handoff=_script_json(handoff),
        handoff_query=_script_json(urlencode({"state": handoff or ""})),
    )
    response = HTMLResponse(html, status_code=status_code)
    response.headers["Content-Security-Policy"] = (
        f"default-src 'none'; script-src 'nonce-{nonce}'; frame-ancestors 'none'"
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@router.get("/auth/{provider}/callback", tags=["oauth"])
async def oauth_callback(
    provider: str = Path(..., description="OAuth provider"),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish a provider login inside the popup and hand the result to the opener."""
    runtime = get_runtime()
    settings = runtime.settings
    if provider not in OAUTH_PROVIDERS:
        raise NotFoundError(f"OAuth provider {provider} is not available")

    try:
        if error:
            raise OAuthError(f"{provider} sign-in was not completed", detail={"reason": error})
        await _enforce_rate_limit(runtime, f"oauth:callback:{provider}", 30, 60)
        account, issued = await runtime.auth.complete_oauth(provider, code or "", state or "")
    except ServiceError as exc:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _callback_page(
            settings,
            {"success": False, "error": exc.message, "code": exc.error_code},
            status_code=exc.status_code,
        )

    user = _account_to_response(account).model_dump(mode="json")
    handoff = await runtime.oauth.store_handoff(
        {"accessToken": issued.access_token, "user": user}
    )
    response = _callback_page(
        settings,
        {"success": True, "accessToken": issued.access_token, "user": user},
        handoff=handoff,
    )
    _set_refresh_cookie(response, settings, issued.refresh_token)
    return response


@router.get("/auth/oauth-state", response_model=Envelope, tags=["oauth"])
async def oauth_state(state: str = Query(..., max_length=128)):
    """One-time pickup of a login result left by the callback page."""
    runtime = get_runtime()
    payload = await runtime.oauth.pop_handoff(state)
    if not payload:
        raise NotFoundError("OAuth state not found or expired")
    return Envelope(status="ok", data=payload)
