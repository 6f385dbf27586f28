"""
CraftCtrl - JWT Token Management

Signs and verifies the three token kinds of the login flow:
- Access token (15 minutes): identity, session and permission snapshot
- Refresh token (7 days): only valid together with the matching session row
- Challenge token (5 or 60 minutes): links the two steps of a 2FA or
  recovery login

Security:
- One shared HS256 secret for all kinds
- Every token carries a random jti, so no two issued tokens are equal
- Expiry is checked against the injected clock, not the host clock
- Every failure surfaces as the same "Invalid or expired token" message;
  the specific cause goes to the log only

Lifetimes are fixed design constants. Changing them breaks clients that
schedule refreshes around them.
"""

from datetime import timedelta
from typing import Iterable, List, Literal, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, Field, ValidationError

from craftctrl.auth.clock import Clock, IdGenerator
from craftctrl.auth.models import TempSessionKind, User
from craftctrl.errors import INVALID_TOKEN, Unauthorized
from craftctrl.logging import get_logger


logger = get_logger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 15
REFRESH_TOKEN_EXPIRE_DAYS = 7
CHALLENGE_TOKEN_EXPIRE_MINUTES = {
    TempSessionKind.TWO_FACTOR: 5,
    TempSessionKind.RECOVERY: 60,
}

ACCESS_TOKEN_LIFETIME = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
REFRESH_TOKEN_LIFETIME = timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)


def challenge_lifetime(kind: TempSessionKind) -> timedelta:
    return timedelta(minutes=CHALLENGE_TOKEN_EXPIRE_MINUTES[TempSessionKind(kind)])


class InvalidTokenError(Unauthorized):
    """
    Raised when a token fails verification.

    The public message never changes; `reason` keeps the cause for logs.
    """

    def __init__(self, reason: str):
        super().__init__(INVALID_TOKEN)
        self.reason = reason


class _Claims(BaseModel):
    jti: str
    iat: int
    exp: int

    class Config:
        extra = "forbid"
        populate_by_name = True


class AccessTokenPayload(_Claims):
    """
    Access token claims.

    Attributes:
        user_id: Subject (userId claim)
        session_id: Session the token was minted for (sessionId claim)
        username: Login name at issue time
        permissions: Global permission names at issue time
        is_super_admin: Super-admin flag at issue time
    """
    user_id: str = Field(..., alias="userId")
    session_id: str = Field(..., alias="sessionId")
    username: str
    permissions: List[str]
    is_super_admin: bool = Field(..., alias="isSuperAdmin")


class RefreshTokenPayload(_Claims):
    session_id: str = Field(..., alias="sessionId")
    user_id: str = Field(..., alias="userId")


class ChallengeTokenPayload(_Claims):
    user_id: str = Field(..., alias="userId")
    type: Literal["session"]


class TokenCodec:
    """
    Stateless JWT signer/verifier.

    Args:
        secret_key: Shared signing secret (at least 32 characters)
        algorithm: JWS algorithm, HS256 by default
        clock: Time source for iat/exp
        ids: Source of jti values
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
    ):
        if len(secret_key) < 32:
            raise ValueError("secret_key must be at least 32 characters")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock or Clock()
        self._ids = ids or IdGenerator()

    # -------------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------------

    def _encode(self, claims: dict, lifetime: timedelta) -> str:
        now = self._clock.timestamp()
        payload = {
            **claims,
            "jti": self._ids.new_token_id(),
            "iat": now,
            "exp": now + int(lifetime.total_seconds()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)

    def create_access_token(
        self, user: User, session_id: str, permissions: Iterable[str]
    ) -> str:
        """
        Create a 15-minute access token.

        Args:
            user: Authenticated user
            session_id: Server-side session the token is bound to
            permissions: Effective global permission names

        Returns:
            Encoded JWT string
        """
        return self._encode(
            {
                "userId": user.id,
                "sessionId": session_id,
                "username": user.username,
                "permissions": sorted(set(permissions)),
                "isSuperAdmin": bool(user.is_super_admin),
            },
            ACCESS_TOKEN_LIFETIME,
        )

    def create_refresh_token(self, session_id: str, user_id: str) -> str:
        """Create a 7-day refresh token for a session."""
        return self._encode(
            {"sessionId": session_id, "userId": user_id},
            REFRESH_TOKEN_LIFETIME,
        )

    def create_challenge_token(
        self, user_id: str, kind: TempSessionKind = TempSessionKind.TWO_FACTOR
    ) -> str:
        """
        Create an interim token linking the two steps of a login.

        The lifetime depends on the kind: 5 minutes for 2FA, 60 for recovery.
        """
        return self._encode(
            {"userId": user_id, "type": "session"},
            challenge_lifetime(kind),
        )

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------

    def _decode(self, token: str, model, kind: str):
        if not token:
            raise self._reject(kind, "missing")

        try:
            # exp is checked below against the injected clock
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise self._reject(kind, f"decode_failed: {e}")

        try:
            payload = model(**claims)
        except (ValidationError, TypeError) as e:
            raise self._reject(kind, f"bad_shape: {e.__class__.__name__}")

        if payload.exp <= self._clock.timestamp():
            raise self._reject(kind, "expired")

        return payload

    @staticmethod
    def _reject(kind: str, reason: str) -> InvalidTokenError:
        logger.info("token_rejected", kind=kind, reason=reason)
        return InvalidTokenError(reason)

    def verify_access_token(self, token: str) -> AccessTokenPayload:
        """
        Verify and decode an access token.

        Raises:
            InvalidTokenError: If token is forged, malformed, of another kind
                or expired
        """
        return self._decode(token, AccessTokenPayload, "access")

    def verify_refresh_token(self, token: str) -> RefreshTokenPayload:
        return self._decode(token, RefreshTokenPayload, "refresh")

    def verify_challenge_token(self, token: str) -> ChallengeTokenPayload:
        return self._decode(token, ChallengeTokenPayload, "challenge")


def get_token_expiry_seconds() -> int:
    """Access token lifetime in seconds for login responses."""
    return ACCESS_TOKEN_EXPIRE_MINUTES * 60
