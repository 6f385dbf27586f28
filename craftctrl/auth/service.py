"""
CraftCtrl - Authentication Orchestrator

The login state machine and everything that mints or destroys credentials:

    password --> forced reset? --> RECOVERY challenge
             \-> 2FA enabled?  --> 2FA challenge --> verify_2fa --+
             \-------------------------------------------------------> session + tokens

Security:
- Unknown, inactive and wrong-password logins fail identically
- Challenge tokens are single use: the temp session keyed by the token
  is deleted before any credentials are issued
- Refresh tokens rotate on every use via compare-and-swap
- Password reset logs the user out everywhere
"""

import secrets
from datetime import timedelta
from typing import List, Optional, Union

from pydantic import BaseModel

from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.mailer import ResetMailer
from craftctrl.auth.models import TempSessionKind, User
from craftctrl.auth.password import hash_password, needs_rehash, verify_password
from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.schemas import UserResponse
from craftctrl.auth.sessions import SessionInfo, SessionManager
from craftctrl.auth.store import CredentialStore
from craftctrl.auth.tokens import TokenCodec
from craftctrl.auth.two_factor import TwoFactorService
from craftctrl.errors import (
    INVALID_CREDENTIALS,
    INVALID_TOKEN,
    InternalError,
    InvalidInput,
    NotFound,
    Unauthorized,
)
from craftctrl.logging import get_logger


logger = get_logger(__name__)

RESET_TOKEN_EXPIRE_MINUTES = 60
RESET_TOKEN_LIFETIME = timedelta(minutes=RESET_TOKEN_EXPIRE_MINUTES)
INVALID_RESET_TOKEN = "Invalid or expired reset token"


class AuthResult(BaseModel):
    """Credentials issued by a completed login."""
    access_token: str
    refresh_token: str
    session_id: str
    user: UserResponse
    permissions: List[str]


class ChallengeResult(BaseModel):
    """Login stopped before issuing credentials; a second step is required."""
    requires_2fa: bool = False
    requires_password_change: bool = False
    session_token: str


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str


class AuthenticatedUser(BaseModel):
    """
    Caller identity resolved from a bearer token.

    Attributes:
        user_id: Authenticated user
        session_id: Session the access token is bound to
        token_id: jti of the presented token, for log correlation
        permissions: Permission snapshot embedded in the token
    """
    user_id: str
    username: str
    email: str
    is_super_admin: bool
    session_id: str
    token_id: str
    permissions: List[str]


class AuthService:
    """
    Composes sessions, tokens, permissions and 2FA into the auth flows.

    Args:
        store: Credential store
        sessions: Session manager
        permissions: Permission resolver
        two_factor: TOTP service
        codec: JWT signer/verifier
        mailer: Reset-link sender
        clock: Time source
        ids: Source of reset tokens
        bcrypt_rounds: Work factor for new hashes (settings.BCRYPT_ROUNDS if None)
        reset_cooldown_minutes: Minimum gap between reset mails per user
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionManager,
        permissions: PermissionResolver,
        two_factor: TwoFactorService,
        codec: TokenCodec,
        mailer: ResetMailer,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        bcrypt_rounds: Optional[int] = None,
        reset_cooldown_minutes: int = 5,
    ):
        self.store = store
        self.sessions = sessions
        self.permissions = permissions
        self.two_factor = two_factor
        self.codec = codec
        self.mailer = mailer
        self.clock = clock or store.clock
        self.ids = ids or store.ids
        self.bcrypt_rounds = bcrypt_rounds
        self.reset_cooldown = timedelta(minutes=reset_cooldown_minutes)
        # Compared against on unknown/inactive logins to equalize bcrypt cost
        self._dummy_hash = hash_password(secrets.token_urlsafe(16), bcrypt_rounds)

    # =========================================================================
    # Login
    # =========================================================================

    async def login(
        self,
        username: str,
        password: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Union[ChallengeResult, AuthResult]:
        """
        Check a password and start the appropriate second step.

        Returns:
            ChallengeResult if a password change or 2FA code is required,
            AuthResult otherwise

        Raises:
            Unauthorized: Unknown user, inactive user or wrong password
                (same message for all three)
        """
        user = self.store.get_user_by_username(username)

        if not user or not user.is_active:
            verify_password(password, self._dummy_hash)
            logger.info(
                "login_failed",
                reason="unknown_user" if not user else "inactive_user",
                ip_address=ip_address,
            )
            raise Unauthorized(INVALID_CREDENTIALS)

        if not verify_password(password, user.password_hash):
            logger.info("login_failed", reason="bad_password", user_id=user.id, ip_address=ip_address)
            raise Unauthorized(INVALID_CREDENTIALS)

        if needs_rehash(user.password_hash, self.bcrypt_rounds):
            self.store.update_user(
                user.id, password_hash=hash_password(password, self.bcrypt_rounds)
            )
            logger.info("password_rehashed", user_id=user.id)

        if user.change_password:
            await self.request_password_reset(user.username, user_agent, ip_address)
            session_token = await self._start_challenge(
                user, TempSessionKind.RECOVERY, user_agent, ip_address
            )
            logger.info("login_requires_password_change", user_id=user.id)
            return ChallengeResult(requires_password_change=True, session_token=session_token)

        if user.two_factor_enabled:
            session_token = await self._start_challenge(
                user, TempSessionKind.TWO_FACTOR, user_agent, ip_address
            )
            logger.info("login_requires_2fa", user_id=user.id)
            return ChallengeResult(requires_2fa=True, session_token=session_token)

        return await self._complete_login(user, user_agent, ip_address)

    async def _start_challenge(
        self,
        user: User,
        kind: TempSessionKind,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> str:
        # The challenge JWT is also the temp session key
        token = self.codec.create_challenge_token(user.id, kind)
        await self.sessions.create_temp_session(token, user.id, kind, user_agent, ip_address)
        return token

    async def verify_2fa(
        self,
        session_token: str,
        totp_code: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthResult:
        """
        Finish a 2FA login.

        Args:
            session_token: Challenge token returned by login
            totp_code: Current code from the authenticator app

        Raises:
            Unauthorized: Bad or reused challenge, inactive user or wrong
                code (same message for all)
        """
        claims = self.codec.verify_challenge_token(session_token)

        temp = await self.sessions.get_temp_session(session_token)
        if (
            not temp
            or temp.kind != TempSessionKind.TWO_FACTOR.value
            or temp.user_id != claims.user_id
        ):
            logger.info("2fa_challenge_rejected", reason="no_temp_session")
            raise Unauthorized(INVALID_TOKEN)

        user = self.store.get_user_by_id(temp.user_id)
        if not user or not user.is_active:
            logger.info("2fa_challenge_rejected", reason="inactive_user", user_id=temp.user_id)
            raise Unauthorized(INVALID_TOKEN)

        if not user.two_factor_secret or not self.two_factor.check_code(
            user.two_factor_secret, totp_code
        ):
            logger.info("2fa_challenge_rejected", reason="bad_code", user_id=user.id)
            raise Unauthorized(INVALID_TOKEN)

        if not await self.sessions.delete_temp_session(session_token):
            # A concurrent verify consumed it first
            raise Unauthorized(INVALID_TOKEN)

        return await self._complete_login(user, user_agent, ip_address)

    async def _complete_login(
        self,
        user: User,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> AuthResult:
        session = await self.sessions.create_session(
            user.id,
            lambda session_id: self.codec.create_refresh_token(session_id, user.id),
            user_agent=user_agent,
            ip_address=ip_address,
        )

        permissions = sorted(await self.permissions.get_user_permissions(user.id))
        access_token = self.codec.create_access_token(user, session.id, permissions)

        logger.info("login_succeeded", user_id=user.id, session_id=session.id)

        return AuthResult(
            access_token=access_token,
            refresh_token=session.refresh_token,
            session_id=session.id,
            user=UserResponse.model_validate(user),
            permissions=permissions,
        )

    # =========================================================================
    # Tokens
    # =========================================================================

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new access/refresh pair.

        The presented token stops working once this succeeds.

        Raises:
            Unauthorized: Invalid token, superseded token, expired or missing
                session, inactive user, or a concurrent refresh won the race
        """
        claims = self.codec.verify_refresh_token(refresh_token)

        session = await self.sessions.get_session(claims.session_id)
        if (
            not session
            or session.user_id != claims.user_id
            or not secrets.compare_digest(session.refresh_token, refresh_token)
            or self.sessions.is_expired(session)
        ):
            logger.info("refresh_rejected", session_id=claims.session_id)
            raise Unauthorized(INVALID_TOKEN)

        user = self.store.get_user_by_id(claims.user_id)
        if not user or not user.is_active:
            logger.info("refresh_rejected", session_id=session.id, reason="inactive_user")
            raise Unauthorized(INVALID_TOKEN)

        permissions = await self.permissions.get_user_permissions(user.id)
        access_token = self.codec.create_access_token(user, session.id, permissions)
        new_refresh_token = self.codec.create_refresh_token(session.id, user.id)

        if not await self.sessions.rotate_refresh_token(
            session.id, refresh_token, new_refresh_token
        ):
            raise Unauthorized(INVALID_TOKEN)

        return TokenPair(access_token=access_token, refresh_token=new_refresh_token)

    async def authenticate(self, access_token: str) -> AuthenticatedUser:
        """
        Resolve a bearer token to a live session and active user.

        Touches the session's last_active_at.

        Raises:
            Unauthorized: Invalid token, revoked/expired session, inactive user
        """
        claims = self.codec.verify_access_token(access_token)

        session = await self.sessions.validate_session(claims.session_id)
        if not session or session.user_id != claims.user_id:
            logger.info("access_rejected", reason="session_gone", session_id=claims.session_id)
            raise Unauthorized(INVALID_TOKEN)

        user = self.store.get_user_by_id(claims.user_id)
        if not user or not user.is_active:
            logger.info("access_rejected", reason="inactive_user", user_id=claims.user_id)
            raise Unauthorized(INVALID_TOKEN)

        return AuthenticatedUser(
            user_id=user.id,
            username=user.username,
            email=user.email,
            is_super_admin=user.is_super_admin,
            session_id=session.id,
            token_id=claims.jti,
            permissions=claims.permissions,
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    async def logout(self, session_id: str) -> None:
        """Delete a session. Deleting an absent session is not an error."""
        await self.sessions.delete_session(session_id)
        logger.info("logout", session_id=session_id)

    async def logout_all_sessions(
        self, user_id: str, exclude_session_id: Optional[str] = None
    ) -> int:
        return await self.sessions.delete_all_user_sessions(user_id, exclude_session_id)

    async def revoke_session(self, session_id: str, caller_user_id: str) -> bool:
        """
        Delete a session only if it belongs to the caller.

        The caller is responsible for refusing to revoke its current session.

        Returns:
            Whether a session was removed
        """
        session = await self.sessions.get_session(session_id)
        if not session or session.user_id != caller_user_id:
            return False
        return await self.sessions.delete_session(session_id)

    async def get_user_sessions(self, user_id: str) -> List[SessionInfo]:
        return await self.sessions.get_user_sessions(user_id)

    # =========================================================================
    # Passwords
    # =========================================================================

    async def request_password_reset(
        self,
        username: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        """
        Create a reset token and mail the link.

        Silently does nothing for unknown or inactive users, and while the
        user's newest reset token is younger than the cooldown. The cooldown
        looks only at when that token was created, not whether it was used.
        """
        user = self.store.get_user_by_username(username)
        if not user or not user.is_active:
            logger.info("password_reset_ignored", reason="unknown_or_inactive")
            return

        now = self.clock.now()
        last_request = self.store.get_latest_reset_request(user.id)
        if last_request is not None and now - last_request < self.reset_cooldown:
            logger.info("password_reset_throttled", user_id=user.id)
            return

        token = self.ids.new_token()
        self.store.create_password_reset_token(user.id, token, now + RESET_TOKEN_LIFETIME)
        logger.info("password_reset_requested", user_id=user.id)

        await self.mailer.send_password_reset(
            user.email,
            user.username,
            token,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def reset_password(self, token: str, new_password: str) -> None:
        """
        Set a new password using a reset token.

        Raises:
            InvalidInput: Token missing, expired or already used
        """
        if not new_password:
            raise InvalidInput("New password is required")

        reset = self.store.get_password_reset_token(token) if token else None
        if not reset:
            raise InvalidInput(INVALID_RESET_TOKEN)

        # Claim first so a concurrent reset with the same token fails
        if not self.store.mark_password_reset_token_used(token):
            raise InvalidInput(INVALID_RESET_TOKEN)

        updated = self.store.update_user(
            reset.user_id,
            password_hash=hash_password(new_password, self.bcrypt_rounds),
            change_password=False,
        )
        if not updated:
            raise InternalError("Failed to update password")

        count = await self.sessions.delete_all_user_sessions(reset.user_id)
        logger.info("password_reset_completed", user_id=reset.user_id, sessions_revoked=count)

    async def force_password_change(self, user_id: str) -> None:
        """
        Require a password reset at next login and log the user out everywhere.

        Raises:
            NotFound: Unknown user
        """
        if not self.store.update_user(user_id, change_password=True):
            raise NotFound("User not found")

        await self.sessions.delete_all_user_sessions(user_id)
        logger.info("password_change_forced", user_id=user_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        keep_session_id: Optional[str] = None,
    ) -> int:
        """
        Change a password knowing the current one.

        Returns:
            Number of other sessions that were revoked

        Raises:
            NotFound: Unknown user
            Unauthorized: Current password is wrong
        """
        user = self.store.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")

        if not verify_password(current_password, user.password_hash):
            logger.info("password_change_rejected", user_id=user_id)
            raise Unauthorized(INVALID_CREDENTIALS)

        self.store.update_user(
            user_id,
            password_hash=hash_password(new_password, self.bcrypt_rounds),
            change_password=False,
        )

        count = await self.sessions.delete_all_user_sessions(user_id, keep_session_id)
        logger.info("password_changed", user_id=user_id, sessions_revoked=count)
        return count

    async def get_profile(self, user_id: str) -> UserResponse:
        user = self.store.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return UserResponse.model_validate(user)
