"""
CraftCtrl - Security Dependencies

FastAPI dependencies for authentication and authorization.

Usage:
    @router.get("/me")
    async def me(user: AuthenticatedUser = Depends(require_auth)):
        ...

    @router.post("/servers/{server_id}/start")
    async def start(user: AuthenticatedUser = Depends(require_permission("server:start"))):
        ...

Security:
- No bearer token means an anonymous request; protected routes reject it
- A bearer token that fails verification is always 401, even on public routes
- Every authenticated request re-validates the session and touches it
- Authorization is deny-by-default
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.service import AuthenticatedUser, AuthService
from craftctrl.auth.two_factor import TwoFactorService
from craftctrl.auth.users import UserService
from craftctrl.errors import Forbidden, Unauthorized
from craftctrl.logging import bind_context, get_logger


logger = get_logger(__name__)

# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)

RESOURCE_PATH_PARAMS = ("server_id", "group_id", "id")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_permission_resolver(request: Request) -> PermissionResolver:
    return request.app.state.permission_resolver


def get_two_factor_service(request: Request) -> TwoFactorService:
    return request.app.state.two_factor_service


def get_user_service(request: Request) -> UserService:
    return request.app.state.user_service


def get_client_ip(request: Request) -> str:
    """Extract client IP from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    """Extract user agent from request."""
    return request.headers.get("User-Agent", "unknown")[:512]


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    auth: AuthService = Depends(get_auth_service),
) -> Optional[AuthenticatedUser]:
    """
    Resolve the caller from the Authorization header.

    Returns:
        AuthenticatedUser, or None when no bearer token was sent

    Raises:
        Unauthorized: Token invalid/expired, session gone, user inactive
    """
    if not credentials:
        return None

    user = await auth.authenticate(credentials.credentials)
    bind_context(user_id=user.user_id)
    return user


async def require_auth(
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
) -> AuthenticatedUser:
    if user is None:
        raise Unauthorized("Authentication required")
    return user


def require_permission(permission: str):
    """
    Dependency factory enforcing one permission.

    The resource ID for scoped checks is read from the server_id, group_id
    or id path parameter, whichever the route declares first.

    Args:
        permission: Required permission name, e.g. "server:start"

    Raises:
        Unauthorized: Not authenticated
        Forbidden: Permission not granted
    """
    async def checker(
        request: Request,
        user: AuthenticatedUser = Depends(require_auth),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> AuthenticatedUser:
        resource_id = next(
            (
                request.path_params[name]
                for name in RESOURCE_PATH_PARAMS
                if name in request.path_params
            ),
            None,
        )

        if not await resolver.check_permission(user.user_id, permission, resource_id):
            logger.info(
                "permission_denied",
                user_id=user.user_id,
                permission=permission,
                resource_id=resource_id,
            )
            raise Forbidden(f"Permission denied: {permission}")

        return user

    return checker


async def require_super_admin(
    user: AuthenticatedUser = Depends(require_auth),
) -> AuthenticatedUser:
    if not user.is_super_admin:
        raise Forbidden("Super admin access required")
    return user
