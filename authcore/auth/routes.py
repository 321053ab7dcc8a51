"""
authcore - Authentication Routes

API endpoints for authentication:
- POST /auth/login      - Check credentials; tokens or OTP challenge
- POST /auth/verify-ip  - Complete an OTP challenge
- POST /auth/refresh    - Rotate a refresh token
- GET  /auth/refresh    - Cookie-based rotation with redirect
- POST /auth/logout     - Revoke refresh token(s)
- GET  /auth/me         - Get current user info

Tokens are returned in the body and also set as httpOnly cookies.
Failures are AuthError subclasses rendered by the app's exception handler.
"""

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from authcore.auth.dependencies import (
    AuthenticatedRequest,
    get_auth_service,
    get_client_ip,
    get_current_user,
    get_db,
    get_user_agent,
)
from authcore.auth.errors import AuthError, NotFound, TokenExpiredOrUnknown
from authcore.auth.models import User
from authcore.auth.schemas import (
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    RefreshRequest,
    TokenResponse,
    UserResponse,
    VerifyChallengeRequest,
)
from authcore.auth.tokens import TokenPair
from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def set_token_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    secure = not settings.is_development
    response.set_cookie(
        settings.ACCESS_COOKIE_NAME,
        tokens.access_token,
        max_age=tokens.expires_in,
        httponly=True,
        secure=secure,
        samesite="lax",
    )
    response.set_cookie(
        settings.REFRESH_COOKIE_NAME,
        tokens.refresh_token,
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 3600,
        httponly=True,
        secure=secure,
        samesite="lax",
    )


def clear_token_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.ACCESS_COOKIE_NAME)
    response.delete_cookie(settings.REFRESH_COOKIE_NAME)


def safe_next_path(next_path: Optional[str]) -> str:
    """Only same-site relative paths are followed after a refresh."""
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return "/"
    if "\\" in next_path:
        return "/"
    return next_path


@router.post(
    "/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    responses={401: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    summary="Authenticate with email and password",
)
async def login(request: Request, response: Response, credentials: LoginRequest):
    """
    Check credentials from the caller's origin.

    Returns tokens when the origin is trusted; otherwise an OTP is sent
    and the response carries requires_challenge with the user_id to send
    back to /auth/verify-ip.
    """
    auth = get_auth_service(request)
    db = get_db(request)
    try:
        result = await auth.login(
            db,
            credentials.email,
            credentials.password,
            get_client_ip(request),
            get_user_agent(request),
        )
    finally:
        db.close()

    if result.requires_challenge:
        return LoginResponse(
            status=result.status,
            requires_challenge=True,
            user_id=result.user_id,
            masked_destination=result.masked_destination,
        )

    set_token_cookies(response, result.tokens, _settings(request))
    return LoginResponse(status=result.status, tokens=result.tokens)


@router.post(
    "/verify-ip",
    response_model=TokenResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    summary="Complete an OTP challenge for a new origin",
)
async def verify_ip(request: Request, response: Response, body: VerifyChallengeRequest):
    auth = get_auth_service(request)
    db = get_db(request)
    try:
        tokens = await auth.verify_challenge(
            db,
            body.user_id,
            get_client_ip(request),
            body.code,
            get_user_agent(request),
        )
    finally:
        db.close()

    set_token_cookies(response, tokens, _settings(request))
    return TokenResponse(tokens=tokens)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Rotate a refresh token",
)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    """
    Exchange a refresh token (body, else cookie) for a new token pair.
    The presented token is single-use.
    """
    settings = _settings(request)
    token = body.refresh_token if body else request.cookies.get(settings.REFRESH_COOKIE_NAME)
    if not token:
        raise TokenExpiredOrUnknown()

    auth = get_auth_service(request)
    db = get_db(request)
    try:
        tokens = await auth.refresh(db, token)
    finally:
        db.close()

    set_token_cookies(response, tokens, settings)
    return TokenResponse(tokens=tokens)


@router.get("/refresh", summary="Rotate the refresh cookie and redirect")
async def refresh_redirect(request: Request, next: Optional[str] = Query(default=None)):
    """
    Browser flow: rotate the refresh cookie and go back to `next`.
    Any failure clears the cookies and redirects to the login page.
    """
    settings = _settings(request)
    target = safe_next_path(next)
    token = request.cookies.get(settings.REFRESH_COOKIE_NAME)

    tokens = None
    if token:
        auth = get_auth_service(request)
        db = get_db(request)
        try:
            tokens = await auth.refresh(db, token)
        except AuthError as e:
            logger.info("refresh_redirect_failed", reason=e.error_code)
        finally:
            db.close()

    if tokens is None:
        redirect = RedirectResponse(
            f"{settings.LOGIN_PATH}?{urlencode({'next': target})}", status_code=303
        )
        clear_token_cookies(redirect, settings)
        return redirect

    redirect = RedirectResponse(target, status_code=303)
    set_token_cookies(redirect, tokens, settings)
    return redirect


@router.post(
    "/logout",
    response_model=LogoutResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Revoke refresh tokens",
)
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    user: AuthenticatedRequest = Depends(get_current_user),
):
    """
    Revoke the presented refresh token (body, else cookie), or every
    refresh token of the user with all_sessions=true.
    """
    settings = _settings(request)
    body = body or LogoutRequest()
    token = body.refresh_token or request.cookies.get(settings.REFRESH_COOKIE_NAME)

    auth = get_auth_service(request)
    db = get_db(request)
    try:
        count = await auth.logout(db, user.user_id, token, body.all_sessions)
    finally:
        db.close()

    clear_token_cookies(response, settings)
    message = "All sessions revoked" if body.all_sessions else "Logged out"
    return LogoutResponse(message=message, tokens_revoked=count)


@router.get("/me", response_model=UserResponse, summary="Get current user information")
async def get_me(request: Request, user: AuthenticatedRequest = Depends(get_current_user)):
    db = get_db(request)
    try:
        db_user = db.get(User, user.user_id)
        if db_user is None:
            raise NotFound("User not found")

        return UserResponse(
            id=db_user.id,
            email=db_user.email,
            first_name=db_user.first_name,
            last_name=db_user.last_name,
            role=db_user.role.value,
            custom_role_id=db_user.custom_role_id,
            is_active=db_user.is_active,
            last_login_at=db_user.last_login_at,
            created_at=db_user.created_at,
        )
    finally:
        db.close()
