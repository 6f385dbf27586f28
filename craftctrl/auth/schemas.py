"""
CraftCtrl - Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.
"""

import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, validator

from craftctrl.auth.models import ActionType


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,64}$")


def _check_email(v: str) -> str:
    """Basic email format validation (allows .local for development)."""
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


def _check_username(v: str) -> str:
    if not USERNAME_PATTERN.match(v):
        raise ValueError(
            "Username must be 3-64 characters of letters, digits, '.', '_' or '-'"
        )
    return v


# =============================================================================
# Users
# =============================================================================

class UserResponse(BaseModel):
    """Public view of a user account; never includes hashes or secrets."""
    id: str
    username: str
    email: str
    is_active: bool
    is_super_admin: bool
    change_password: bool
    two_factor_enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CreateUserRequest(BaseModel):
    """Request body for POST /users."""
    username: str
    email: str
    password: str = Field(..., min_length=6)
    is_super_admin: bool = False

    @validator("username")
    def username_format(cls, v):
        return _check_username(v)

    @validator("email")
    def email_format(cls, v):
        return _check_email(v)


class UpdateUserRequest(BaseModel):
    """Request body for PATCH /users/{id}. Omitted fields are left unchanged."""
    username: Optional[str] = None
    email: Optional[str] = None
    is_active: Optional[bool] = None

    @validator("username")
    def username_format(cls, v):
        return _check_username(v) if v is not None else v

    @validator("email")
    def email_format(cls, v):
        return _check_email(v) if v is not None else v


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    page: int
    limit: int
    pages: int


# =============================================================================
# Login flow
# =============================================================================

class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    """Response body for a completed login or 2FA verification."""
    access_token: str = Field(..., description="JWT access token")
    refresh_token: str = Field(..., description="Single-use refresh token")
    token_type: str = Field(default="bearer")
    expires_in: int = Field(..., description="Seconds until the access token expires")
    session_id: str
    user: UserResponse
    permissions: List[str]


class ChallengeResponse(BaseModel):
    """Response body when login needs a second step."""
    requires_2fa: bool = False
    requires_password_change: bool = False
    session_token: str = Field(..., description="Challenge token for the second step")


class Verify2FARequest(BaseModel):
    """Request body for POST /auth/2fa/verify."""
    session_token: str
    totp_code: str

    @validator("totp_code")
    def code_format(cls, v):
        v = v.strip()
        if not re.fullmatch(r"\d{6}", v):
            raise ValueError("TOTP code must be 6 digits")
        return v


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., min_length=1)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    message: str = Field(default="Logged out")
    sessions_invalidated: int = Field(default=1)


# =============================================================================
# Sessions
# =============================================================================

class SessionResponse(BaseModel):
    """Session information for the owner's device list."""
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    is_active: bool
    is_current: bool = False


class ActiveSessionsResponse(BaseModel):
    """Response body for GET /auth/sessions."""
    sessions: List[SessionResponse]
    total: int


# =============================================================================
# Password recovery
# =============================================================================

class ForgotPasswordRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# =============================================================================
# Two-factor
# =============================================================================

class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str


class TwoFactorCodeRequest(BaseModel):
    code: str

    @validator("code")
    def code_format(cls, v):
        v = v.strip()
        if not re.fullmatch(r"\d{6}", v):
            raise ValueError("TOTP code must be 6 digits")
        return v


class TwoFactorVerifyResponse(BaseModel):
    valid: bool


# =============================================================================
# Permissions and roles
# =============================================================================

class PermissionResponse(BaseModel):
    id: str
    name: str
    resource: str
    action: str
    description: str

    class Config:
        from_attributes = True


class GrantRequest(BaseModel):
    """Request body for PUT /users/{id}/servers/{server_id} and the group variant."""
    actions: List[ActionType] = Field(..., description="Replaces any existing grant")


class GrantResponse(BaseModel):
    user_id: str
    resource_id: str
    actions: List[str]


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    is_super_admin: bool
    permissions: List[str]
    servers: Dict[str, List[str]]
    groups: Dict[str, List[str]]


class CreateRoleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: str = Field(default="", max_length=255)
    permissions: List[str] = Field(default_factory=list)


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str
    is_system_role: bool
    permissions: List[str]


class AssignRoleRequest(BaseModel):
    role_id: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    request_id: Optional[str] = None
