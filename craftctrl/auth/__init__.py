"""
CraftCtrl - Authentication Package

Credential and permission engine:
- bcrypt password hashing
- JWT access/refresh tokens backed by server-side sessions
- TOTP second factor with single-use login challenges
- Layered permissions: super-admin, roles, per-server and per-group grants
"""

from craftctrl.auth.models import User, Session, TempSession, TempSessionKind
from craftctrl.auth.permissions import PermissionResolver
from craftctrl.auth.service import AuthService, AuthResult, ChallengeResult, TokenPair
from craftctrl.auth.sessions import SessionManager
from craftctrl.auth.store import CredentialStore
from craftctrl.auth.tokens import TokenCodec, InvalidTokenError
from craftctrl.auth.two_factor import TwoFactorService

__all__ = [
    "User",
    "Session",
    "TempSession",
    "TempSessionKind",
    "AuthService",
    "AuthResult",
    "ChallengeResult",
    "TokenPair",
    "CredentialStore",
    "PermissionResolver",
    "SessionManager",
    "TokenCodec",
    "InvalidTokenError",
    "TwoFactorService",
]
