"""
CraftCtrl - Permission Resolution

Layered authorization over three sources of grants:
1. is_super_admin: everything, always
2. Roles: global permission names via role -> permission links
3. Resource grants: per-server and per-group action lists

check_permission evaluates them in exactly that order; the first match
wins. Resource grants store bare actions ("start"); they are matched
against "server:<action>" / "group:<action>" names at the point of use.

Nothing is cached. Every call re-reads the store, so a revoke takes
effect on the next request.
"""

from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel

from craftctrl.auth.models import ActionType, Permission, Role
from craftctrl.auth.store import CredentialStore
from craftctrl.errors import Conflict, Forbidden, InvalidInput, NotFound
from craftctrl.logging import get_logger


logger = get_logger(__name__)

SERVER_PREFIX = "server:"
GROUP_PREFIX = "group:"
VALID_ACTIONS = frozenset(action.value for action in ActionType)


class EffectivePermissions(BaseModel):
    """Everything a user can do, split by scope."""
    user_id: str
    is_super_admin: bool
    permissions: List[str]
    servers: Dict[str, List[str]]
    groups: Dict[str, List[str]]


class RoleDetails(BaseModel):
    id: str
    name: str
    description: str
    is_system_role: bool
    permissions: List[str]


def normalize_actions(actions: Iterable[str]) -> List[str]:
    """
    Validate a grant's action list.

    Raises:
        InvalidInput: Unknown action name
    """
    normalized = []
    for action in actions:
        value = getattr(action, "value", action)
        if value not in VALID_ACTIONS:
            raise InvalidInput(f"Unknown action: {value}")
        if value not in normalized:
            normalized.append(value)
    return normalized


class PermissionResolver:
    """
    Computes and checks permissions; manages grants and roles.

    Args:
        store: Credential store
    """

    def __init__(self, store: CredentialStore):
        self.store = store

    # =========================================================================
    # Resolution
    # =========================================================================

    async def get_user_permissions(self, user_id: str) -> Set[str]:
        """
        Get the user's global permission set.

        Super-admins receive the whole catalog, including entries added
        after their account was created. Everyone else gets the union of
        role permissions and the bare actions of their resource grants.

        Returns:
            Set of permission names (empty for unknown users)
        """
        user = self.store.get_user_by_id(user_id)
        if not user:
            return set()

        if user.is_super_admin:
            return set(self.store.get_all_permission_names())

        permissions = set(self.store.get_role_permission_names(user_id))

        for actions in self.store.get_user_server_permissions_map(user_id).values():
            permissions.update(actions)
        for actions in self.store.get_user_group_permissions_map(user_id).values():
            permissions.update(actions)

        return permissions

    async def check_permission(
        self, user_id: str, permission: str, resource_id: Optional[str] = None
    ) -> bool:
        """
        Check one permission, optionally scoped to a server or group.

        Args:
            user_id: User to check
            permission: Permission name, e.g. "server:start"
            resource_id: Server or group ID for scoped names

        Returns:
            True if granted (deny-by-default)
        """
        user = self.store.get_user_by_id(user_id)
        if not user:
            return False

        if user.is_super_admin:
            return True

        if permission in await self.get_user_permissions(user_id):
            return True

        if resource_id is not None:
            if permission.startswith(SERVER_PREFIX):
                action = permission[len(SERVER_PREFIX):]
                return action in self.store.get_user_server_permissions(user_id, resource_id)

            if permission.startswith(GROUP_PREFIX):
                action = permission[len(GROUP_PREFIX):]
                return action in self.store.get_user_group_permissions(user_id, resource_id)

        return False

    async def can_access_server(self, user_id: str, server_id: str, action: str) -> bool:
        return await self.check_permission(user_id, f"{SERVER_PREFIX}{action}", server_id)

    async def can_access_group(self, user_id: str, group_id: str, action: str) -> bool:
        return await self.check_permission(user_id, f"{GROUP_PREFIX}{action}", group_id)

    async def get_effective_permissions(self, user_id: str) -> EffectivePermissions:
        """
        Global permissions plus per-server and per-group grants.

        Raises:
            NotFound: Unknown user
        """
        user = self.store.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")

        return EffectivePermissions(
            user_id=user_id,
            is_super_admin=user.is_super_admin,
            permissions=sorted(await self.get_user_permissions(user_id)),
            servers=self.store.get_user_server_permissions_map(user_id),
            groups=self.store.get_user_group_permissions_map(user_id),
        )

    # =========================================================================
    # Resource grants
    # =========================================================================

    def _require_user(self, user_id: str) -> None:
        if not self.store.get_user_by_id(user_id):
            raise NotFound("User not found")

    async def grant_server_permission(
        self, user_id: str, server_id: str, actions: Iterable[str], granted_by: str
    ) -> List[str]:
        """
        Replace the user's action set on a server.

        Returns:
            The stored action list
        """
        self._require_user(user_id)
        normalized = normalize_actions(actions)
        self.store.grant_server_permission(user_id, server_id, normalized, granted_by)
        logger.info(
            "server_permission_granted",
            user_id=user_id,
            server_id=server_id,
            actions=normalized,
            granted_by=granted_by,
        )
        return normalized

    async def revoke_server_permission(self, user_id: str, server_id: str) -> bool:
        removed = self.store.revoke_server_permission(user_id, server_id)
        logger.info(
            "server_permission_revoked", user_id=user_id, server_id=server_id, removed=removed
        )
        return removed

    async def grant_group_permission(
        self, user_id: str, group_id: str, actions: Iterable[str], granted_by: str
    ) -> List[str]:
        """Replace the user's action set on a server group."""
        self._require_user(user_id)
        normalized = normalize_actions(actions)
        self.store.grant_group_permission(user_id, group_id, normalized, granted_by)
        logger.info(
            "group_permission_granted",
            user_id=user_id,
            group_id=group_id,
            actions=normalized,
            granted_by=granted_by,
        )
        return normalized

    async def revoke_group_permission(self, user_id: str, group_id: str) -> bool:
        removed = self.store.revoke_group_permission(user_id, group_id)
        logger.info(
            "group_permission_revoked", user_id=user_id, group_id=group_id, removed=removed
        )
        return removed

    # =========================================================================
    # Catalog and roles
    # =========================================================================

    async def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def _role_details(self, role: Role) -> RoleDetails:
        return RoleDetails(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system_role=role.is_system_role,
            permissions=[p.name for p in self.store.get_role_permissions(role.id)],
        )

    async def create_role(
        self, name: str, description: str, permission_names: Iterable[str]
    ) -> RoleDetails:
        """
        Create a custom role.

        Raises:
            Conflict: Role name already taken
            InvalidInput: A permission name is not in the catalog
        """
        if self.store.get_role_by_name(name):
            raise Conflict("Role name already exists")

        names = list(dict.fromkeys(permission_names))
        found = self.store.get_permissions_by_names(names)
        missing = set(names) - {p.name for p in found}
        if missing:
            raise InvalidInput(f"Unknown permissions: {', '.join(sorted(missing))}")

        role = self.store.create_role(name, description, [p.id for p in found])
        logger.info("role_created", role_id=role.id, name=name)
        return self._role_details(role)

    async def get_role(self, role_id: str) -> RoleDetails:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFound("Role not found")
        return self._role_details(role)

    async def list_roles(self) -> List[RoleDetails]:
        return [self._role_details(role) for role in self.store.list_roles()]

    async def delete_role(self, role_id: str) -> None:
        """
        Raises:
            NotFound: Unknown role
            Forbidden: System roles are protected
        """
        role = self.store.get_role(role_id)
        if not role:
            raise NotFound("Role not found")
        if role.is_system_role:
            raise Forbidden("System roles cannot be deleted")

        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id)

    async def assign_role(self, user_id: str, role_id: str, assigned_by: str) -> bool:
        """
        Give a user a role.

        Returns:
            False if the user already held it
        """
        self._require_user(user_id)
        if not self.store.get_role(role_id):
            raise NotFound("Role not found")

        assigned = self.store.assign_role(user_id, role_id, assigned_by)
        logger.info(
            "role_assigned", user_id=user_id, role_id=role_id, assigned_by=assigned_by
        )
        return assigned

    async def unassign_role(self, user_id: str, role_id: str) -> bool:
        return self.store.unassign_role(user_id, role_id)
