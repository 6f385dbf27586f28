"""
CraftCtrl - Authentication Routes

API endpoints for authentication:
- POST   /auth/login                  - Password step of login
- POST   /auth/2fa/verify             - Second step of a 2FA login
- POST   /auth/refresh                - Rotate refresh token
- POST   /auth/logout                 - End current session
- POST   /auth/logout-all             - End every other session
- GET    /auth/sessions               - List own sessions
- DELETE /auth/sessions/{session_id}  - Revoke one of own sessions
- GET    /auth/me                     - Current user profile
- POST   /auth/forgot-password        - Mail a reset link
- POST   /auth/reset-password         - Consume a reset link
- POST   /auth/change-password        - Change password knowing the current one
- POST   /auth/2fa/setup|enable|disable|standalone-verify|remove

Services are taken from app.state; every failure is a CraftCtrlError
mapped to a JSON response by the app's exception handler.
"""

from typing import Union

from fastapi import APIRouter, Depends, Request, status

from craftctrl.auth.dependencies import (
    get_auth_service,
    get_client_ip,
    get_two_factor_service,
    get_user_agent,
    require_auth,
)
from craftctrl.auth.schemas import (
    ActiveSessionsResponse,
    ChallengeResponse,
    ChangePasswordRequest,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    ResetPasswordRequest,
    SessionResponse,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyResponse,
    UserResponse,
    Verify2FARequest,
)
from craftctrl.auth.service import AuthenticatedUser, AuthResult, AuthService
from craftctrl.auth.tokens import get_token_expiry_seconds
from craftctrl.auth.two_factor import TwoFactorService
from craftctrl.errors import InvalidInput, NotFound


router = APIRouter(prefix="/auth", tags=["authentication"])

RESET_REQUESTED_MESSAGE = "If the user exists, a password reset link has been sent"


def _login_response(result: AuthResult) -> LoginResponse:
    return LoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=get_token_expiry_seconds(),
        session_id=result.session_id,
        user=result.user,
        permissions=result.permissions,
    )


# =============================================================================
# Login flow
# =============================================================================

@router.post(
    "/login",
    response_model=Union[LoginResponse, ChallengeResponse],
    responses={401: {"model": ErrorResponse}},
    summary="Authenticate with username and password",
)
async def login(
    request: Request,
    credentials: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Check the password and either issue tokens or ask for a second step.

    Returns:
        LoginResponse, or ChallengeResponse with requires_2fa /
        requires_password_change and a challenge session_token

    Raises:
        401: Invalid credentials (same for unknown, inactive, wrong password)
    """
    result = await auth.login(
        credentials.username,
        credentials.password,
        user_agent=get_user_agent(request),
        ip_address=get_client_ip(request),
    )

    if isinstance(result, AuthResult):
        return _login_response(result)

    return ChallengeResponse(
        requires_2fa=result.requires_2fa,
        requires_password_change=result.requires_password_change,
        session_token=result.session_token,
    )


@router.post(
    "/2fa/verify",
    response_model=LoginResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Complete a 2FA login",
)
async def verify_2fa(
    request: Request,
    body: Verify2FARequest,
    auth: AuthService = Depends(get_auth_service),
):
    """Exchange the login challenge token and a TOTP code for tokens."""
    result = await auth.verify_2fa(
        body.session_token,
        body.totp_code,
        user_agent=get_user_agent(request),
        ip_address=get_client_ip(request),
    )
    return _login_response(result)


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Rotate refresh token",
)
async def refresh(
    body: RefreshRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """
    Issue a new access/refresh pair.

    The presented refresh token is invalid afterwards.
    """
    pair = await auth.refresh_token(body.refresh_token)
    return RefreshResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=get_token_expiry_seconds(),
    )


@router.post(
    "/logout",
    response_model=LogoutResponse,
    summary="End current session",
)
async def logout(
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.logout(user.session_id)
    return LogoutResponse(message="Logged out", sessions_invalidated=1)


@router.post(
    "/logout-all",
    response_model=LogoutResponse,
    summary="End every other session",
)
async def logout_all(
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    """Log out everywhere except the current session."""
    count = await auth.logout_all_sessions(user.user_id, exclude_session_id=user.session_id)
    return LogoutResponse(message="Other sessions logged out", sessions_invalidated=count)


# =============================================================================
# Sessions and profile
# =============================================================================

@router.get(
    "/sessions",
    response_model=ActiveSessionsResponse,
    summary="List own sessions",
)
async def list_sessions(
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    sessions = await auth.get_user_sessions(user.user_id)
    items = [
        SessionResponse(**s.model_dump(), is_current=(s.id == user.session_id))
        for s in sessions
    ]
    return ActiveSessionsResponse(sessions=items, total=len(items))


@router.delete(
    "/sessions/{session_id}",
    response_model=LogoutResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Revoke one of own sessions",
)
async def revoke_session(
    session_id: str,
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    """
    Revoke another of the caller's sessions.

    Use /auth/logout to end the current one.
    """
    if session_id == user.session_id:
        raise InvalidInput("Cannot revoke the current session; use logout")

    if not await auth.revoke_session(session_id, user.user_id):
        raise NotFound("Session not found")

    return LogoutResponse(message="Session revoked", sessions_invalidated=1)


@router.get(
    "/me",
    response_model=UserResponse,
    summary="Get current user information",
)
async def get_me(
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    return await auth.get_profile(user.user_id)


# =============================================================================
# Passwords
# =============================================================================

@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    summary="Request a password reset link",
)
async def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """Always answers the same way, whether or not the user exists."""
    await auth.request_password_reset(
        body.username,
        user_agent=get_user_agent(request),
        ip_address=get_client_ip(request),
    )
    return MessageResponse(message=RESET_REQUESTED_MESSAGE)


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Set a new password with a reset token",
)
async def reset_password(
    body: ResetPasswordRequest,
    auth: AuthService = Depends(get_auth_service),
):
    """Consumes the token and logs the user out of every device."""
    await auth.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset")


@router.post(
    "/change-password",
    response_model=MessageResponse,
    responses={401: {"model": ErrorResponse}},
    summary="Change own password",
)
async def change_password(
    body: ChangePasswordRequest,
    user: AuthenticatedUser = Depends(require_auth),
    auth: AuthService = Depends(get_auth_service),
):
    await auth.change_password(
        user.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=user.session_id,
    )
    return MessageResponse(message="Password changed")


# =============================================================================
# Two-factor management
# =============================================================================

@router.post(
    "/2fa/setup",
    response_model=TwoFactorSetupResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Generate a pending TOTP secret",
)
async def setup_2fa(
    user: AuthenticatedUser = Depends(require_auth),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
):
    """2FA stays off until /2fa/enable confirms a code."""
    setup = await two_factor.setup_2fa(user.user_id)
    return TwoFactorSetupResponse(secret=setup.secret, provisioning_uri=setup.provisioning_uri)


@router.post(
    "/2fa/enable",
    response_model=MessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Confirm the pending secret and enable 2FA",
)
async def enable_2fa(
    body: TwoFactorCodeRequest,
    user: AuthenticatedUser = Depends(require_auth),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
):
    await two_factor.enable_2fa(user.user_id, body.code)
    return MessageResponse(message="Two-factor authentication enabled")


@router.post(
    "/2fa/disable",
    response_model=MessageResponse,
    summary="Disable 2FA",
)
async def disable_2fa(
    body: TwoFactorCodeRequest,
    user: AuthenticatedUser = Depends(require_auth),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
):
    await two_factor.disable_2fa(user.user_id, body.code)
    return MessageResponse(message="Two-factor authentication disabled")


@router.post(
    "/2fa/standalone-verify",
    response_model=TwoFactorVerifyResponse,
    summary="Check a TOTP code without logging in",
)
async def standalone_verify_2fa(
    body: TwoFactorCodeRequest,
    user: AuthenticatedUser = Depends(require_auth),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
):
    valid = await two_factor.verify_2fa(user.user_id, body.code)
    return TwoFactorVerifyResponse(valid=valid)


@router.post(
    "/2fa/remove",
    response_model=MessageResponse,
    summary="Remove 2FA and its secret",
)
async def remove_2fa(
    body: TwoFactorCodeRequest,
    user: AuthenticatedUser = Depends(require_auth),
    two_factor: TwoFactorService = Depends(get_two_factor_service),
):
    await two_factor.remove_2fa(user.user_id, body.code)
    return MessageResponse(message="Two-factor authentication removed")
