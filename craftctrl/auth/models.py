"""
CraftCtrl - Authentication Database Models

SQLModel table models for users, sessions, one-time artifacts and the
role/permission model. Uses SQLite for development, PostgreSQL in production.

Security:
- Passwords stored as bcrypt hashes only
- Sessions are server-controlled for immediate revocation
- All timestamps are naive UTC

Resource grants keep their action list as JSON text in the `permissions`
column; the encoding never leaves CredentialStore (see craftctrl.auth.store).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ResourceType(str, Enum):
    """Kinds of resources a permission can target."""
    USER = "user"
    SERVER = "server"
    SERVER_GROUP = "server_group"


class ActionType(str, Enum):
    """Actions that can be granted globally or per resource."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    CONSOLE = "console"
    LOGS = "logs"


class TempSessionKind(str, Enum):
    """Second step a temp session is waiting for."""
    TWO_FACTOR = "2FA"
    RECOVERY = "RECOVERY"


class User(SQLModel, table=True):
    """
    User account for authentication.

    Attributes:
        id: Unique identifier
        username: Login identifier (unique)
        email: Contact address for password reset (unique)
        password_hash: bcrypt hash (never store plaintext)
        is_active: Soft-disable flag; inactive users cannot log in
        is_super_admin: Bypasses every permission check
        change_password: Forces a password reset on next login
        two_factor_enabled: Whether login requires a TOTP code
        two_factor_secret: base32 TOTP secret (pending until enabled)
    """
    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=36)
    username: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False)
    )
    password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )
    is_super_admin: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    change_password: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    two_factor_enabled: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    two_factor_secret: Optional[str] = Field(
        default=None, sa_column=Column(String(64), nullable=True)
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class Session(SQLModel, table=True):
    """
    Long-lived login session, one per device/browser.

    The refresh token handed to the client is stored verbatim; a refresh
    only succeeds when the presented token matches it exactly, and every
    refresh replaces it (rotation).
    """
    __tablename__ = "user_sessions"

    id: str = Field(primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    refresh_token: str = Field(sa_column=Column(Text, nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True)
    )
    user_agent: Optional[str] = Field(
        default=None, sa_column=Column(String(512), nullable=True)
    )
    ip_address: Optional[str] = Field(
        default=None, sa_column=Column(String(45), nullable=True)
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    last_active_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class TempSession(SQLModel, table=True):
    """Single-use bridge between the password step and the second login step."""
    __tablename__ = "temp_sessions"

    token: str = Field(sa_column=Column(Text, primary_key=True))
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    kind: str = Field(sa_column=Column(String(10), nullable=False))
    user_agent: Optional[str] = Field(
        default=None, sa_column=Column(String(512), nullable=True)
    )
    ip_address: Optional[str] = Field(
        default=None, sa_column=Column(String(45), nullable=True)
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True)
    )


class PasswordResetToken(SQLModel, table=True):
    """Single-use credential recovery token delivered by mail."""
    __tablename__ = "password_reset_tokens"

    token: str = Field(sa_column=Column(String(64), primary_key=True))
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False, index=True)
    )
    used: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class Permission(SQLModel, table=True):
    """Catalog entry: a named (resource, action) capability."""
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action"),)

    id: str = Field(primary_key=True, max_length=64)
    name: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    resource: str = Field(sa_column=Column(String(32), nullable=False))
    action: str = Field(sa_column=Column(String(32), nullable=False))
    description: str = Field(sa_column=Column(String(255), nullable=False))


class Role(SQLModel, table=True):
    """Named bundle of permissions. System roles cannot be deleted."""
    __tablename__ = "roles"

    id: str = Field(primary_key=True, max_length=36)
    name: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    description: str = Field(sa_column=Column(String(255), nullable=False))
    is_system_role: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"

    role_id: str = Field(foreign_key="roles.id", primary_key=True)
    permission_id: str = Field(foreign_key="permissions.id", primary_key=True)


class UserRole(SQLModel, table=True):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role_id"),)

    id: str = Field(primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    role_id: str = Field(foreign_key="roles.id", nullable=False)
    assigned_by: str = Field(nullable=False)
    assigned_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class ServerPermission(SQLModel, table=True):
    """Per-(user, server) grant. At most one row per pair."""
    __tablename__ = "server_permissions"
    __table_args__ = (UniqueConstraint("user_id", "server_id"),)

    id: str = Field(primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    server_id: str = Field(nullable=False, index=True)
    permissions: str = Field(sa_column=Column(Text, nullable=False))
    granted_by: str = Field(nullable=False)
    granted_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class GroupPermission(SQLModel, table=True):
    """Per-(user, server group) grant. At most one row per pair."""
    __tablename__ = "group_permissions"
    __table_args__ = (UniqueConstraint("user_id", "group_id"),)

    id: str = Field(primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", nullable=False, index=True)
    group_id: str = Field(nullable=False, index=True)
    permissions: str = Field(sa_column=Column(Text, nullable=False))
    granted_by: str = Field(nullable=False)
    granted_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
