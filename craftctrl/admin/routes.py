"""
CraftCtrl - Admin API Routes

Privileged endpoints for account and access management:
- User CRUD and forced password changes
- Per-server and per-group grants
- Effective permission listing
- Role management (super-admin only)

Callers are already privileged, so errors carry specific reasons.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from craftctrl.auth.dependencies import (
    get_auth_service,
    get_permission_resolver,
    get_user_service,
    require_permission,
    require_super_admin,
)
from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.schemas import (
    AssignRoleRequest,
    CreateRoleRequest,
    CreateUserRequest,
    EffectivePermissionsResponse,
    ErrorResponse,
    GrantRequest,
    GrantResponse,
    MessageResponse,
    PermissionResponse,
    RoleResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from craftctrl.auth.service import AuthenticatedUser, AuthService
from craftctrl.auth.users import UserService
from craftctrl.errors import NotFound


router = APIRouter(tags=["admin"])


# =============================================================================
# Users
# =============================================================================

@router.get("/users", response_model=UserListResponse, summary="List users")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=64),
    current_user: AuthenticatedUser = Depends(require_permission("user:read")),
    users: UserService = Depends(get_user_service),
):
    return await users.list_users(page=page, limit=limit, search=search)


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}},
    summary="Create user",
)
async def create_user(
    body: CreateUserRequest,
    current_user: AuthenticatedUser = Depends(require_permission("user:create")),
    users: UserService = Depends(get_user_service),
):
    """New accounts must change their password at first login."""
    return await users.create_user(
        current_user,
        username=body.username,
        email=body.email,
        password=body.password,
        is_super_admin=body.is_super_admin,
    )


@router.get(
    "/users/{user_id}",
    response_model=UserResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get user",
)
async def get_user(
    user_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("user:read")),
    users: UserService = Depends(get_user_service),
):
    return await users.get_user(user_id)


@router.patch(
    "/users/{user_id}",
    response_model=UserResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Update user",
)
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    current_user: AuthenticatedUser = Depends(require_permission("user:update")),
    users: UserService = Depends(get_user_service),
):
    return await users.update_user(
        current_user,
        user_id,
        username=body.username,
        email=body.email,
        is_active=body.is_active,
    )


@router.delete(
    "/users/{user_id}",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Delete user",
)
async def delete_user(
    user_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("user:delete")),
    users: UserService = Depends(get_user_service),
):
    await users.delete_user(current_user, user_id)
    return MessageResponse(message="User deleted")


@router.post(
    "/users/{user_id}/force-password-change",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Require a password reset at next login",
)
async def force_password_change(
    user_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("user:update")),
    users: UserService = Depends(get_user_service),
    auth: AuthService = Depends(get_auth_service),
):
    """Also logs the user out of every device."""
    users.check_can_modify(current_user, user_id)
    await auth.force_password_change(user_id)
    return MessageResponse(message="User must change password at next login")


# =============================================================================
# Permissions
# =============================================================================

@router.get(
    "/permissions",
    response_model=List[PermissionResponse],
    summary="List the permission catalog",
)
async def list_permissions(
    current_user: AuthenticatedUser = Depends(require_permission("user:read")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    return [PermissionResponse.model_validate(p) for p in await resolver.list_permissions()]


@router.get(
    "/users/{user_id}/permissions",
    response_model=EffectivePermissionsResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Effective permissions of a user",
)
async def get_user_permissions(
    user_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("user:read")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    effective = await resolver.get_effective_permissions(user_id)
    return EffectivePermissionsResponse(**effective.model_dump())


@router.put(
    "/users/{user_id}/servers/{server_id}",
    response_model=GrantResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Replace a user's permissions on a server",
)
async def grant_server_permission(
    user_id: str,
    server_id: str,
    body: GrantRequest,
    current_user: AuthenticatedUser = Depends(require_permission("server:update")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    actions = await resolver.grant_server_permission(
        user_id, server_id, body.actions, granted_by=current_user.user_id
    )
    return GrantResponse(user_id=user_id, resource_id=server_id, actions=actions)


@router.delete(
    "/users/{user_id}/servers/{server_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Revoke a user's permissions on a server",
)
async def revoke_server_permission(
    user_id: str,
    server_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("server:update")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    if not await resolver.revoke_server_permission(user_id, server_id):
        raise NotFound("Permission grant not found")
    return MessageResponse(message="Server permissions revoked")


@router.put(
    "/users/{user_id}/groups/{group_id}",
    response_model=GrantResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Replace a user's permissions on a server group",
)
async def grant_group_permission(
    user_id: str,
    group_id: str,
    body: GrantRequest,
    current_user: AuthenticatedUser = Depends(require_permission("group:update")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    actions = await resolver.grant_group_permission(
        user_id, group_id, body.actions, granted_by=current_user.user_id
    )
    return GrantResponse(user_id=user_id, resource_id=group_id, actions=actions)


@router.delete(
    "/users/{user_id}/groups/{group_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Revoke a user's permissions on a server group",
)
async def revoke_group_permission(
    user_id: str,
    group_id: str,
    current_user: AuthenticatedUser = Depends(require_permission("group:update")),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    if not await resolver.revoke_group_permission(user_id, group_id):
        raise NotFound("Permission grant not found")
    return MessageResponse(message="Group permissions revoked")


# =============================================================================
# Roles (super-admin only)
# =============================================================================

@router.get("/roles", response_model=List[RoleResponse], summary="List roles")
async def list_roles(
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    return [RoleResponse(**r.model_dump()) for r in await resolver.list_roles()]


@router.post(
    "/roles",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    summary="Create role",
)
async def create_role(
    body: CreateRoleRequest,
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    role = await resolver.create_role(body.name, body.description, body.permissions)
    return RoleResponse(**role.model_dump())


@router.get(
    "/roles/{role_id}",
    response_model=RoleResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get role",
)
async def get_role(
    role_id: str,
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    role = await resolver.get_role(role_id)
    return RoleResponse(**role.model_dump())


@router.delete(
    "/roles/{role_id}",
    response_model=MessageResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Delete role",
)
async def delete_role(
    role_id: str,
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    await resolver.delete_role(role_id)
    return MessageResponse(message="Role deleted")


@router.post(
    "/users/{user_id}/roles",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Assign a role to a user",
)
async def assign_role(
    user_id: str,
    body: AssignRoleRequest,
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    assigned = await resolver.assign_role(user_id, body.role_id, assigned_by=current_user.user_id)
    message = "Role assigned" if assigned else "Role already assigned"
    return MessageResponse(message=message)


@router.delete(
    "/users/{user_id}/roles/{role_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Remove a role from a user",
)
async def unassign_role(
    user_id: str,
    role_id: str,
    current_user: AuthenticatedUser = Depends(require_super_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    if not await resolver.unassign_role(user_id, role_id):
        raise NotFound("Role assignment not found")
    return MessageResponse(message="Role removed")
