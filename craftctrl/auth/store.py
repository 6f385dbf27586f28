"""
CraftCtrl - Credential Store

The only component that talks to the database. Every service in the auth
core receives a CredentialStore at construction; nothing holds cached
copies of users, sessions or grants, so every decision re-reads the store.

Each public method is one unit of work: it opens a session, runs its
statements inside a single transaction and commits before returning.
Grant action lists are JSON-encoded here and decoded here; callers only
ever see list[str].
"""

import json
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DBSession, col, select

from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.database import CatalogEntry, SystemRole
from craftctrl.auth.models import (
    GroupPermission,
    PasswordResetToken,
    Permission,
    Role,
    RolePermission,
    ServerPermission,
    Session,
    TempSession,
    User,
    UserRole,
)
from craftctrl.logging import get_logger


logger = get_logger(__name__)

USER_UPDATABLE_FIELDS = frozenset({
    "username",
    "email",
    "is_active",
    "password_hash",
    "two_factor_secret",
    "two_factor_enabled",
    "change_password",
})


def encode_actions(actions: Iterable[str]) -> str:
    """Serialize a grant's action list, dropping duplicates but keeping order."""
    seen = []
    for action in actions:
        value = getattr(action, "value", action)
        if value not in seen:
            seen.append(value)
    return json.dumps(seen)


def decode_actions(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return list(json.loads(raw))


class CredentialStore:
    """
    Relational store for users, sessions and permission grants.

    Args:
        session_factory: Callable returning a new SQLModel session
        clock: Time source for created/updated timestamps and expiry filters
        ids: Source of record IDs
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
    ):
        self._session_factory = session_factory
        self.clock = clock or Clock()
        self.ids = ids or IdGenerator()

    # =========================================================================
    # Users
    # =========================================================================

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._session_factory() as db:
            return db.get(User, user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._session_factory() as db:
            return db.exec(select(User).where(User.username == username)).first()

    def find_conflicting_user(
        self,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_user_id: Optional[str] = None,
    ) -> Optional[User]:
        """Return any other user already holding the username or email."""
        clauses = []
        if username is not None:
            clauses.append(User.username == username)
        if email is not None:
            clauses.append(User.email == email)
        if not clauses:
            return None

        statement = select(User).where(or_(*clauses))
        if exclude_user_id is not None:
            statement = statement.where(User.id != exclude_user_id)

        with self._session_factory() as db:
            return db.exec(statement).first()

    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        is_super_admin: bool = False,
        is_active: bool = True,
        change_password: bool = False,
    ) -> User:
        now = self.clock.now()
        user = User(
            id=self.ids.new_id(),
            username=username,
            email=email,
            password_hash=password_hash,
            is_super_admin=is_super_admin,
            is_active=is_active,
            change_password=change_password,
            two_factor_enabled=False,
            two_factor_secret=None,
            created_at=now,
            updated_at=now,
        )

        with self._session_factory() as db:
            db.add(user)
            db.commit()
            db.refresh(user)

        return user

    def update_user(self, user_id: str, **changes) -> Optional[User]:
        """
        Apply a partial update to a user.

        Only USER_UPDATABLE_FIELDS are written; anything else is ignored.

        Returns:
            Updated user, or None if no row matched
        """
        values = {k: v for k, v in changes.items() if k in USER_UPDATABLE_FIELDS}
        if not values:
            return self.get_user_by_id(user_id)

        values["updated_at"] = self.clock.now()

        with self._session_factory() as db:
            result = db.execute(
                update(User).where(col(User.id) == user_id).values(**values)
            )
            db.commit()
            if result.rowcount == 0:
                return None
            return db.get(User, user_id, populate_existing=True)

    def delete_user(self, user_id: str) -> bool:
        """Delete a user together with every row that belongs to them."""
        with self._session_factory() as db:
            for model in (
                Session,
                TempSession,
                PasswordResetToken,
                UserRole,
                ServerPermission,
                GroupPermission,
            ):
                db.execute(delete(model).where(col(model.user_id) == user_id))

            result = db.execute(delete(User).where(col(User.id) == user_id))
            db.commit()
            return result.rowcount > 0

    def list_users(
        self, offset: int = 0, limit: int = 20, search: Optional[str] = None
    ) -> Tuple[List[User], int]:
        """
        Page through users, newest first.

        Returns:
            Tuple of (users on this page, total matching users)
        """
        statement = select(User)
        count_statement = select(func.count()).select_from(User)

        if search:
            term = f"%{search}%"
            condition = or_(col(User.username).ilike(term), col(User.email).ilike(term))
            statement = statement.where(condition)
            count_statement = count_statement.where(condition)

        statement = (
            statement.order_by(col(User.created_at).desc()).offset(offset).limit(limit)
        )

        with self._session_factory() as db:
            total = db.execute(count_statement).scalar_one()
            users = list(db.exec(statement).all())

        return users, total

    # =========================================================================
    # Sessions
    # =========================================================================

    def create_session(
        self,
        session_id: str,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        now = self.clock.now()
        session = Session(
            id=session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            last_active_at=now,
        )

        with self._session_factory() as db:
            db.add(session)
            db.commit()
            db.refresh(session)

        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._session_factory() as db:
            return db.get(Session, session_id)

    def touch_session(self, session_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                update(Session)
                .where(col(Session.id) == session_id)
                .values(last_active_at=self.clock.now())
            )
            db.commit()
            return result.rowcount > 0

    def rotate_refresh_token(
        self, session_id: str, presented_token: str, new_token: str
    ) -> bool:
        """
        Replace a session's refresh token if it still holds the presented one.

        The match, the expiry check and the write are one UPDATE statement,
        so of two concurrent refreshes with the same token only one wins.

        Returns:
            True if the session was rotated
        """
        now = self.clock.now()

        with self._session_factory() as db:
            result = db.execute(
                update(Session)
                .where(
                    col(Session.id) == session_id,
                    col(Session.refresh_token) == presented_token,
                    col(Session.expires_at) > now,
                )
                .values(refresh_token=new_token, last_active_at=now)
            )
            db.commit()
            return result.rowcount == 1

    def delete_session(self, session_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(delete(Session).where(col(Session.id) == session_id))
            db.commit()
            return result.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, exclude_session_id: Optional[str] = None
    ) -> int:
        statement = delete(Session).where(col(Session.user_id) == user_id)
        if exclude_session_id is not None:
            statement = statement.where(col(Session.id) != exclude_session_id)

        with self._session_factory() as db:
            result = db.execute(statement)
            db.commit()
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        """All sessions of a user, most recently active first."""
        statement = (
            select(Session)
            .where(Session.user_id == user_id)
            .order_by(col(Session.last_active_at).desc(), col(Session.created_at).desc())
        )
        with self._session_factory() as db:
            return list(db.exec(statement).all())

    # =========================================================================
    # Temp sessions
    # =========================================================================

    def create_temp_session(
        self,
        token: str,
        user_id: str,
        kind: str,
        expires_at: datetime,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TempSession:
        temp = TempSession(
            token=token,
            user_id=user_id,
            kind=getattr(kind, "value", kind),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=self.clock.now(),
            expires_at=expires_at,
        )

        with self._session_factory() as db:
            db.add(temp)
            db.commit()
            db.refresh(temp)

        return temp

    def get_temp_session(self, token: str) -> Optional[TempSession]:
        """Return the temp session only while it is unexpired."""
        statement = select(TempSession).where(
            TempSession.token == token,
            TempSession.expires_at > self.clock.now(),
        )
        with self._session_factory() as db:
            return db.exec(statement).first()

    def delete_temp_session(self, token: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(delete(TempSession).where(col(TempSession.token) == token))
            db.commit()
            return result.rowcount > 0

    def count_temp_sessions(self, user_id: str, kind: Optional[str] = None) -> int:
        statement = select(func.count()).select_from(TempSession).where(
            col(TempSession.user_id) == user_id
        )
        if kind is not None:
            statement = statement.where(col(TempSession.kind) == getattr(kind, "value", kind))
        with self._session_factory() as db:
            return db.execute(statement).scalar_one()

    # =========================================================================
    # Password reset tokens
    # =========================================================================

    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        reset = PasswordResetToken(
            token=token,
            user_id=user_id,
            expires_at=expires_at,
            used=False,
            created_at=self.clock.now(),
        )

        with self._session_factory() as db:
            db.add(reset)
            db.commit()
            db.refresh(reset)

        return reset

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        """Return the token only while it is unexpired and unused."""
        statement = select(PasswordResetToken).where(
            PasswordResetToken.token == token,
            PasswordResetToken.expires_at > self.clock.now(),
            PasswordResetToken.used == False,  # noqa: E712
        )
        with self._session_factory() as db:
            return db.exec(statement).first()

    def mark_password_reset_token_used(self, token: str) -> bool:
        """
        Claim a reset token.

        Returns:
            True only for the caller that flipped it from unused to used
        """
        with self._session_factory() as db:
            result = db.execute(
                update(PasswordResetToken)
                .where(
                    col(PasswordResetToken.token) == token,
                    col(PasswordResetToken.used) == False,  # noqa: E712
                )
                .values(used=True)
            )
            db.commit()
            return result.rowcount == 1

    def get_latest_reset_request(self, user_id: str) -> Optional[datetime]:
        """Creation time of the user's newest reset token, used or not."""
        statement = select(func.max(PasswordResetToken.created_at)).where(
            col(PasswordResetToken.user_id) == user_id
        )
        with self._session_factory() as db:
            return db.execute(statement).scalar_one_or_none()

    # =========================================================================
    # Permission catalog and roles
    # =========================================================================

    def list_permissions(self) -> List[Permission]:
        with self._session_factory() as db:
            return list(db.exec(select(Permission).order_by(col(Permission.name))).all())

    def get_all_permission_names(self) -> List[str]:
        with self._session_factory() as db:
            return list(db.exec(select(Permission.name)).all())

    def get_permissions_by_names(self, names: Iterable[str]) -> List[Permission]:
        names = list(names)
        if not names:
            return []
        with self._session_factory() as db:
            return list(
                db.exec(select(Permission).where(col(Permission.name).in_(names))).all()
            )

    def get_role_permission_names(self, user_id: str) -> List[str]:
        """Names of every permission reachable through the user's roles."""
        statement = (
            select(Permission.name)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .join(UserRole, col(UserRole.role_id) == col(RolePermission.role_id))
            .where(UserRole.user_id == user_id)
        )
        with self._session_factory() as db:
            return list(db.exec(statement).all())

    def create_role(
        self,
        name: str,
        description: str,
        permission_ids: Iterable[str] = (),
        is_system_role: bool = False,
        role_id: Optional[str] = None,
    ) -> Role:
        role = Role(
            id=role_id or self.ids.new_id(),
            name=name,
            description=description,
            is_system_role=is_system_role,
            created_at=self.clock.now(),
        )

        with self._session_factory() as db:
            db.add(role)
            for permission_id in dict.fromkeys(permission_ids):
                db.add(RolePermission(role_id=role.id, permission_id=permission_id))
            db.commit()
            db.refresh(role)

        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._session_factory() as db:
            return db.get(Role, role_id)

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._session_factory() as db:
            return db.exec(select(Role).where(Role.name == name)).first()

    def list_roles(self) -> List[Role]:
        with self._session_factory() as db:
            return list(db.exec(select(Role).order_by(col(Role.name))).all())

    def get_role_permissions(self, role_id: str) -> List[Permission]:
        statement = (
            select(Permission)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
            .order_by(col(Permission.name))
        )
        with self._session_factory() as db:
            return list(db.exec(statement).all())

    def delete_role(self, role_id: str) -> bool:
        with self._session_factory() as db:
            db.execute(delete(UserRole).where(col(UserRole.role_id) == role_id))
            db.execute(delete(RolePermission).where(col(RolePermission.role_id) == role_id))
            result = db.execute(delete(Role).where(col(Role.id) == role_id))
            db.commit()
            return result.rowcount > 0

    def assign_role(self, user_id: str, role_id: str, assigned_by: str) -> bool:
        """
        Link a role to a user.

        Returns:
            False if the user already held the role
        """
        with self._session_factory() as db:
            existing = db.exec(
                select(UserRole).where(
                    UserRole.user_id == user_id, UserRole.role_id == role_id
                )
            ).first()
            if existing:
                return False

            db.add(UserRole(
                id=self.ids.new_id(),
                user_id=user_id,
                role_id=role_id,
                assigned_by=assigned_by,
                assigned_at=self.clock.now(),
            ))
            db.commit()
            return True

    def unassign_role(self, user_id: str, role_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                delete(UserRole).where(
                    col(UserRole.user_id) == user_id, col(UserRole.role_id) == role_id
                )
            )
            db.commit()
            return result.rowcount > 0

    # =========================================================================
    # Resource-scoped grants
    # =========================================================================

    def _grant(self, model, key_field: str, user_id: str, resource_id: str,
               actions: Iterable[str], granted_by: str) -> None:
        encoded = encode_actions(actions)
        now = self.clock.now()
        replace = (
            update(model)
            .where(
                col(model.user_id) == user_id,
                col(getattr(model, key_field)) == resource_id,
            )
            .values(permissions=encoded, granted_by=granted_by, granted_at=now)
        )

        with self._session_factory() as db:
            if db.execute(replace).rowcount == 0:
                db.add(model(
                    id=self.ids.new_id(),
                    user_id=user_id,
                    permissions=encoded,
                    granted_by=granted_by,
                    granted_at=now,
                    **{key_field: resource_id},
                ))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent first grant inserted the row; replace it instead
                db.rollback()
                db.execute(replace)
                db.commit()

    def _revoke(self, model, key_field: str, user_id: str, resource_id: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                delete(model).where(
                    col(model.user_id) == user_id,
                    col(getattr(model, key_field)) == resource_id,
                )
            )
            db.commit()
            return result.rowcount > 0

    def _actions_for(self, model, key_field: str, user_id: str, resource_id: str) -> List[str]:
        with self._session_factory() as db:
            row = db.exec(
                select(model).where(
                    model.user_id == user_id,
                    getattr(model, key_field) == resource_id,
                )
            ).first()
            return decode_actions(row.permissions) if row else []

    def _actions_map(self, model, key_field: str, user_id: str) -> Dict[str, List[str]]:
        with self._session_factory() as db:
            rows = db.exec(select(model).where(model.user_id == user_id)).all()
            return {getattr(row, key_field): decode_actions(row.permissions) for row in rows}

    def grant_server_permission(
        self, user_id: str, server_id: str, actions: Iterable[str], granted_by: str
    ) -> None:
        """Replace (never merge) the action set for this (user, server)."""
        self._grant(ServerPermission, "server_id", user_id, server_id, actions, granted_by)

    def revoke_server_permission(self, user_id: str, server_id: str) -> bool:
        return self._revoke(ServerPermission, "server_id", user_id, server_id)

    def get_user_server_permissions(self, user_id: str, server_id: str) -> List[str]:
        return self._actions_for(ServerPermission, "server_id", user_id, server_id)

    def get_user_server_permissions_map(self, user_id: str) -> Dict[str, List[str]]:
        return self._actions_map(ServerPermission, "server_id", user_id)

    def grant_group_permission(
        self, user_id: str, group_id: str, actions: Iterable[str], granted_by: str
    ) -> None:
        """Replace (never merge) the action set for this (user, group)."""
        self._grant(GroupPermission, "group_id", user_id, group_id, actions, granted_by)

    def revoke_group_permission(self, user_id: str, group_id: str) -> bool:
        return self._revoke(GroupPermission, "group_id", user_id, group_id)

    def get_user_group_permissions(self, user_id: str, group_id: str) -> List[str]:
        return self._actions_for(GroupPermission, "group_id", user_id, group_id)

    def get_user_group_permissions_map(self, user_id: str) -> Dict[str, List[str]]:
        return self._actions_map(GroupPermission, "group_id", user_id)

    # =========================================================================
    # Bootstrap and maintenance
    # =========================================================================

    def seed_defaults(
        self,
        catalog: Iterable[CatalogEntry],
        system_roles: Dict[str, SystemRole],
        admin_username: str,
        admin_email: str,
        admin_password_hash: Callable[[], str],
    ) -> Dict[str, int]:
        """
        Insert the permission catalog, system roles and the first admin.

        Existing rows are left untouched, so this is safe on every startup.
        The admin password is hashed only when the account is missing.

        Returns:
            Counts of inserted permissions, role links and admin accounts
        """
        counts = {"permissions": 0, "role_permissions": 0, "admins": 0}
        now = self.clock.now()

        with self._session_factory() as db:
            known = set(db.exec(select(Permission.name)).all())
            for entry in catalog:
                if entry.name in known:
                    continue
                db.add(Permission(
                    id=entry.name,
                    name=entry.name,
                    resource=entry.resource,
                    action=entry.action,
                    description=entry.description,
                ))
                counts["permissions"] += 1
            db.flush()

            all_ids = list(db.exec(select(Permission.id)).all())

            for role_spec in system_roles.values():
                role = db.exec(select(Role).where(Role.name == role_spec.name)).first()
                if role is None:
                    role = Role(
                        id=role_spec.name,
                        name=role_spec.name,
                        description=role_spec.description,
                        is_system_role=True,
                        created_at=now,
                    )
                    db.add(role)
                    db.flush()

                if role_spec.grant_all:
                    linked = set(db.exec(
                        select(RolePermission.permission_id)
                        .where(RolePermission.role_id == role.id)
                    ).all())
                    for permission_id in all_ids:
                        if permission_id not in linked:
                            db.add(RolePermission(role_id=role.id, permission_id=permission_id))
                            counts["role_permissions"] += 1

            admin = db.exec(select(User).where(User.username == admin_username)).first()
            if admin is None:
                db.add(User(
                    id=self.ids.new_id(),
                    username=admin_username,
                    email=admin_email,
                    password_hash=admin_password_hash(),
                    is_super_admin=True,
                    is_active=True,
                    change_password=False,
                    two_factor_enabled=False,
                    created_at=now,
                    updated_at=now,
                ))
                counts["admins"] += 1

            db.commit()

        logger.info("defaults_seeded", **counts)
        return counts

    def purge_expired(self) -> Dict[str, int]:
        """
        Delete expired temp sessions, reset tokens and sessions.

        Returns:
            Number of rows removed per table
        """
        now = self.clock.now()
        removed = {}

        with self._session_factory() as db:
            for model in (TempSession, PasswordResetToken, Session):
                result = db.execute(delete(model).where(col(model.expires_at) <= now))
                removed[model.__tablename__] = result.rowcount
            db.commit()

        return removed
