"""
CraftCtrl - User Administration

Administrative CRUD over user accounts. Callers are already privileged,
so failures carry specific reasons (not found, forbidden, conflict).

Super-admin accounts can only be changed by another super-admin and can
never be deleted.
"""

import math
from typing import Optional

from craftctrl.auth.password import hash_password
from craftctrl.auth.schemas import UserListResponse, UserResponse
from craftctrl.auth.service import AuthenticatedUser
from craftctrl.auth.store import CredentialStore
from craftctrl.errors import Conflict, Forbidden, InternalError, InvalidInput, NotFound
from craftctrl.logging import get_logger


logger = get_logger(__name__)

MAX_PAGE_SIZE = 100


class UserService:
    """
    Args:
        store: Credential store
        bcrypt_rounds: Work factor for new hashes (settings.BCRYPT_ROUNDS if None)
    """

    def __init__(self, store: CredentialStore, bcrypt_rounds: Optional[int] = None):
        self.store = store
        self.bcrypt_rounds = bcrypt_rounds

    def _check_unique(
        self,
        username: Optional[str],
        email: Optional[str],
        exclude_user_id: Optional[str] = None,
    ) -> None:
        existing = self.store.find_conflicting_user(username, email, exclude_user_id)
        if not existing:
            return
        if username is not None and existing.username == username:
            raise Conflict("Username already exists")
        raise Conflict("Email already exists")

    async def create_user(
        self,
        actor: AuthenticatedUser,
        username: str,
        email: str,
        password: str,
        is_super_admin: bool = False,
    ) -> UserResponse:
        """
        Create an account that must change its password at first login.

        Raises:
            Forbidden: Non-super-admin creating a super-admin
            Conflict: Username or email taken
        """
        if is_super_admin and not actor.is_super_admin:
            raise Forbidden("Only super admins can create super admin users")

        self._check_unique(username, email)

        user = self.store.create_user(
            username=username,
            email=email,
            password_hash=hash_password(password, self.bcrypt_rounds),
            is_super_admin=is_super_admin,
            change_password=True,
        )

        logger.info("user_created", user_id=user.id, created_by=actor.user_id)
        return UserResponse.model_validate(user)

    async def get_user(self, user_id: str) -> UserResponse:
        user = self.store.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return UserResponse.model_validate(user)

    def check_can_modify(self, actor: AuthenticatedUser, user_id: str) -> None:
        """
        Raises:
            NotFound: Unknown user
            Forbidden: Non-super-admin touching a super-admin
        """
        target = self.store.get_user_by_id(user_id)
        if not target:
            raise NotFound("User not found")
        if target.is_super_admin and not actor.is_super_admin:
            raise Forbidden("Cannot modify super admin user")

    async def update_user(
        self,
        actor: AuthenticatedUser,
        user_id: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> UserResponse:
        """
        Apply a partial update.

        Raises:
            NotFound: Unknown user
            Forbidden: Non-super-admin touching a super-admin
            Conflict: New username or email taken
            InternalError: Store updated nothing
        """
        self.check_can_modify(actor, user_id)
        self._check_unique(username, email, exclude_user_id=user_id)

        changes = {
            key: value
            for key, value in (
                ("username", username),
                ("email", email),
                ("is_active", is_active),
            )
            if value is not None
        }

        updated = self.store.update_user(user_id, **changes)
        if not updated:
            raise InternalError("Failed to update user")

        if is_active is False:
            # A disabled account keeps no live sessions
            self.store.delete_user_sessions(user_id)

        logger.info(
            "user_updated", user_id=user_id, fields=sorted(changes), updated_by=actor.user_id
        )
        return UserResponse.model_validate(updated)

    async def delete_user(self, actor: AuthenticatedUser, user_id: str) -> None:
        """
        Raises:
            InvalidInput: Deleting your own account
            NotFound: Unknown user
            Forbidden: Target is a super-admin
        """
        if user_id == actor.user_id:
            raise InvalidInput("Cannot delete your own account")

        target = self.store.get_user_by_id(user_id)
        if not target:
            raise NotFound("User not found")

        if target.is_super_admin:
            raise Forbidden("Cannot delete super admin user")

        if not self.store.delete_user(user_id):
            raise InternalError("Failed to delete user")

        logger.info("user_deleted", user_id=user_id, deleted_by=actor.user_id)

    async def list_users(
        self, page: int = 1, limit: int = 20, search: Optional[str] = None
    ) -> UserListResponse:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)

        users, total = self.store.list_users(
            offset=(page - 1) * limit, limit=limit, search=search or None
        )

        return UserListResponse(
            users=[UserResponse.model_validate(u) for u in users],
            total=total,
            page=page,
            limit=limit,
            pages=math.ceil(total / limit) if total else 0,
        )
