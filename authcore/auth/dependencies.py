"""
authcore - Security Dependencies

FastAPI dependencies for the transport boundary. The access token is
verified once, here, and turned into an AuthenticatedRequest that route
handlers receive by parameter and pass on explicitly.

Usage:
    @router.get("/protected")
    async def protected_route(user: AuthenticatedRequest = Depends(get_current_user)):
        ...

    @router.get("/admin-only")
    @require_permission(Module.ADMIN, Action.READ)
    async def admin_route(request: Request, user: AuthenticatedRequest = Depends(get_current_user)):
        ...

Security:
- Access token accepted from the Authorization header or the access cookie
- The user row is re-read so deactivation and role changes apply at once
- RBAC is deny-by-default
"""

import ipaddress
from functools import wraps
from typing import Iterable, Optional
from uuid import UUID

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict
from sqlmodel import Session as DBSession

from authcore.auth.errors import AccessTokenInvalid
from authcore.auth.models import Role, User
from authcore.auth.service import AuthService
from authcore.auth.tokens import verify_access_token
from authcore.auth.trust import UNKNOWN_ORIGIN
from authcore.gateway.rbac import Action, Module, PermissionResolver

# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)


class AuthenticatedRequest(BaseModel):
    """
    Verified identity of the caller.

    Built once by get_current_user; core logic never reads identity from
    headers itself.
    """
    model_config = ConfigDict(frozen=True)

    user_id: UUID
    email: str
    name: str
    role: Role
    custom_role_id: Optional[UUID] = None
    token_id: str  # jti for log correlation
    ip_address: str


def get_db(request: Request) -> DBSession:
    """Get database session from app state."""
    return request.app.state.db_session_factory()


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_permission_resolver(request: Request) -> PermissionResolver:
    return request.app.state.permission_resolver


def _parse_ip(value: Optional[str]) -> Optional[str]:
    """Canonical form of an IP address, or None if value is not one."""
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def is_trusted_proxy(peer: Optional[str], proxies: Iterable[str]) -> bool:
    """
    True if the socket peer is one of the configured proxies. Entries are
    addresses, CIDR networks, or a peer name exactly as the server
    reports it.
    """
    if not peer:
        return False
    address = _parse_ip(peer)
    for entry in proxies:
        if entry == peer:
            return True
        if address is None:
            continue
        try:
            if ipaddress.ip_address(address) in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> str:
    """
    Client origin address.

    Forwarding headers are only believed when the socket peer is listed in
    TRUSTED_PROXIES: then the first X-Forwarded-For entry, else X-Real-IP.
    Otherwise, or when those are not valid addresses, the socket peer.
    Anything that does not parse as an IP address yields "unknown".
    """
    peer = request.client.host if request.client else None

    if is_trusted_proxy(peer, request.app.state.settings.TRUSTED_PROXIES):
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = _parse_ip(forwarded.split(",")[0])
            if first:
                return first
        real_ip = _parse_ip(request.headers.get("X-Real-IP"))
        if real_ip:
            return real_ip

    return _parse_ip(peer) or UNKNOWN_ORIGIN


def get_user_agent(request: Request) -> Optional[str]:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:500] if user_agent else None


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedRequest:
    """
    Validate the access token and return the caller's identity.

    Raises:
        AccessTokenInvalid: Missing, invalid or expired token, or the user
            no longer exists or is inactive
    """
    settings = request.app.state.settings
    token = credentials.credentials if credentials else None
    if not token:
        token = request.cookies.get(settings.ACCESS_COOKIE_NAME)
    if not token:
        raise AccessTokenInvalid("Missing authentication token")

    payload = verify_access_token(token, settings)

    db = get_db(request)
    try:
        try:
            user = db.get(User, UUID(payload.sub))
        except ValueError as e:
            raise AccessTokenInvalid() from e

        if user is None or not user.is_active:
            raise AccessTokenInvalid("User account is inactive")

        return AuthenticatedRequest(
            user_id=user.id,
            email=user.email,
            name=user.display_name,
            role=user.role,
            custom_role_id=user.custom_role_id,
            token_id=payload.jti,
            ip_address=get_client_ip(request),
        )
    finally:
        db.close()


def require_permission(module: Module, action: Action):
    """
    Decorator to enforce a module/action permission on a route.

    The route must take `request: Request` and
    `user: AuthenticatedRequest = Depends(get_current_user)`.

    Raises:
        PermissionDenied: If the caller's role lacks the permission
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            user: Optional[AuthenticatedRequest] = kwargs.get("user")
            request: Optional[Request] = kwargs.get("request")

            if user is None or request is None:
                raise AccessTokenInvalid("Authentication required")

            get_permission_resolver(request).require_for_identity(user, module, action)
            return await func(*args, **kwargs)
        return wrapper
    return decorator
