"""
CraftCtrl - Session Management

Server-side sessions for authentication.
Long-lived sessions back the access/refresh token pair; temp sessions
bridge the password step and the second step of a 2FA or recovery login.

Security:
- Sessions are stored server-side, so logout takes effect immediately
- The refresh token is rotated on every use and compared exactly
- Every authenticated request touches last_active_at
- Sessions expire 7 days after creation; refresh does not extend them
"""

from datetime import datetime
from typing import Callable, List, Optional

from pydantic import BaseModel

from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.models import Session, TempSession, TempSessionKind
from craftctrl.auth.store import CredentialStore
from craftctrl.auth.tokens import REFRESH_TOKEN_LIFETIME, challenge_lifetime
from craftctrl.logging import get_logger


logger = get_logger(__name__)


class SessionInfo(BaseModel):
    """A session as shown to its owner, with the computed liveness flag."""
    id: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    is_active: bool

    class Config:
        from_attributes = True


class SessionManager:
    """
    Creates, looks up, rotates and revokes sessions.

    Args:
        store: Credential store
        clock: Time source for expiries
        ids: Source of session IDs
    """

    def __init__(
        self,
        store: CredentialStore,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.ids = ids or store.ids

    async def create_session(
        self,
        user_id: str,
        refresh_token_factory: Callable[[str], str],
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """
        Create a new long-lived session.

        Args:
            user_id: Owning user
            refresh_token_factory: Called with the new session ID; must
                return the refresh token that will be handed to the client
            user_agent: Client user-agent for the session list
            ip_address: Client IP for the session list

        Returns:
            Created Session with the stored refresh token

        Security:
            - Session ID is UUIDv4
            - The stored refresh token is exactly the one the client holds
        """
        session_id = self.ids.new_id()
        refresh_token = refresh_token_factory(session_id)

        session = self.store.create_session(
            session_id=session_id,
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=self.clock.now() + REFRESH_TOKEN_LIFETIME,
            user_agent=user_agent,
            ip_address=ip_address,
        )

        logger.info("session_created", session_id=session_id, user_id=user_id)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def is_expired(self, session: Session) -> bool:
        return session.expires_at <= self.clock.now()

    async def validate_session(self, session_id: str) -> Optional[Session]:
        """
        Return the session if it exists and is unexpired, touching its activity.

        Returns:
            Session if valid, None otherwise
        """
        session = self.store.get_session(session_id)

        if not session or self.is_expired(session):
            return None

        self.store.touch_session(session_id)
        return session

    async def update_session_activity(self, session_id: str) -> None:
        self.store.touch_session(session_id)

    async def rotate_refresh_token(
        self, session_id: str, presented_token: str, new_token: str
    ) -> bool:
        """
        Swap the stored refresh token if it still equals the presented one.

        Returns:
            False if another refresh already rotated it or the session expired
        """
        rotated = self.store.rotate_refresh_token(session_id, presented_token, new_token)
        if not rotated:
            logger.warning("refresh_rotation_lost", session_id=session_id)
        return rotated

    async def delete_session(self, session_id: str) -> bool:
        return self.store.delete_session(session_id)

    async def delete_all_user_sessions(
        self, user_id: str, exclude_session_id: Optional[str] = None
    ) -> int:
        """
        Delete every session of a user (force logout everywhere).

        Args:
            user_id: User whose sessions to delete
            exclude_session_id: Session to keep, typically the caller's own

        Returns:
            Number of sessions deleted
        """
        count = self.store.delete_user_sessions(user_id, exclude_session_id)
        logger.info(
            "sessions_deleted",
            user_id=user_id,
            count=count,
            kept=exclude_session_id,
        )
        return count

    async def get_user_sessions(self, user_id: str) -> List[SessionInfo]:
        """All sessions of a user, most recently active first."""
        now = self.clock.now()
        return [
            SessionInfo(
                id=session.id,
                user_agent=session.user_agent,
                ip_address=session.ip_address,
                created_at=session.created_at,
                last_active_at=session.last_active_at,
                expires_at=session.expires_at,
                is_active=session.expires_at > now,
            )
            for session in self.store.list_user_sessions(user_id)
        ]

    # =========================================================================
    # Temp sessions
    # =========================================================================

    async def create_temp_session(
        self,
        token: str,
        user_id: str,
        kind: TempSessionKind,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TempSession:
        """
        Store a temp session keyed by the challenge token handed to the client.

        Expires after 5 minutes for 2FA and 60 minutes for recovery.
        """
        kind = TempSessionKind(kind)
        return self.store.create_temp_session(
            token=token,
            user_id=user_id,
            kind=kind.value,
            expires_at=self.clock.now() + challenge_lifetime(kind),
            user_agent=user_agent,
            ip_address=ip_address,
        )

    async def get_temp_session(self, token: str) -> Optional[TempSession]:
        """Unexpired temp session for this token, or None."""
        return self.store.get_temp_session(token)

    async def delete_temp_session(self, token: str) -> bool:
        return self.store.delete_temp_session(token)
