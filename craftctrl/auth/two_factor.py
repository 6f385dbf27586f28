"""
CraftCtrl - Two-Factor Authentication

TOTP (RFC 6238) second factor built on pyotp.

A freshly generated secret is *pending*: it is stored on the user but
two_factor_enabled stays false until enable_2fa confirms a code. An
abandoned setup therefore never locks a user out of login.

Security:
- Codes are checked with a tolerance of one 30s step either side
- Disable/remove require a currently valid code
- The secret is only returned once, at setup
"""

from dataclasses import dataclass
from typing import Optional

import pyotp

from craftctrl.auth.clock import Clock
from craftctrl.auth.models import User
from craftctrl.auth.store import CredentialStore
from craftctrl.errors import InvalidInput, NotFound, Unauthorized
from craftctrl.logging import get_logger


logger = get_logger(__name__)

DEFAULT_ISSUER = "CraftCtrl"
VALID_WINDOW = 1


@dataclass
class TwoFactorSetup:
    """Secret and otpauth:// URI for rendering a QR code."""
    secret: str
    provisioning_uri: str


class TwoFactorService:
    """
    Manages per-user TOTP secrets.

    Args:
        store: Credential store
        clock: Time source for code verification
        issuer: Issuer name shown in authenticator apps
    """

    def __init__(
        self,
        store: CredentialStore,
        clock: Optional[Clock] = None,
        issuer: str = DEFAULT_ISSUER,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.issuer = issuer

    def _get_user(self, user_id: str) -> User:
        user = self.store.get_user_by_id(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def check_code(self, secret: str, code: str) -> bool:
        """Validate a code against a secret at the clock's current time."""
        if not code or not secret:
            return False
        totp = pyotp.TOTP(secret)
        return totp.verify(
            str(code).strip(),
            for_time=self.clock.timestamp(),
            valid_window=VALID_WINDOW,
        )

    async def setup_2fa(self, user_id: str) -> TwoFactorSetup:
        """
        Generate and store a pending secret.

        Raises:
            NotFound: Unknown user
            InvalidInput: 2FA already enabled
        """
        user = self._get_user(user_id)
        if user.two_factor_enabled:
            raise InvalidInput("Two-factor authentication is already enabled")

        secret = pyotp.random_base32()
        self.store.update_user(user_id, two_factor_secret=secret)

        uri = pyotp.TOTP(secret).provisioning_uri(
            name=user.email or user.username, issuer_name=self.issuer
        )

        logger.info("2fa_setup_started", user_id=user_id)
        return TwoFactorSetup(secret=secret, provisioning_uri=uri)

    async def verify_2fa(self, user_id: str, code: str) -> bool:
        """
        Check a code against the user's stored (pending or confirmed) secret.

        Raises:
            NotFound: Unknown user
            InvalidInput: No secret has been set up
        """
        user = self._get_user(user_id)
        if not user.two_factor_secret:
            raise InvalidInput("Two-factor authentication is not set up")
        return self.check_code(user.two_factor_secret, code)

    async def enable_2fa(self, user_id: str, code: str) -> None:
        """
        Confirm the pending secret and turn 2FA on.

        Raises:
            InvalidInput: Already enabled, or no pending secret
            Unauthorized: Code does not match
        """
        user = self._get_user(user_id)
        if user.two_factor_enabled:
            raise InvalidInput("Two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise InvalidInput("Two-factor authentication is not set up")
        if not self.check_code(user.two_factor_secret, code):
            logger.info("2fa_enable_rejected", user_id=user_id)
            raise Unauthorized("Invalid 2FA code")

        self.store.update_user(user_id, two_factor_enabled=True)
        logger.info("2fa_enabled", user_id=user_id)

    async def disable_2fa(self, user_id: str, code: str) -> None:
        """
        Turn 2FA off and forget the secret.

        Raises:
            InvalidInput: 2FA is not enabled
            Unauthorized: Code does not match
        """
        user = self._get_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise InvalidInput("Two-factor authentication is not enabled")
        if not self.check_code(user.two_factor_secret, code):
            logger.info("2fa_disable_rejected", user_id=user_id)
            raise Unauthorized("Invalid 2FA code")

        self.store.update_user(
            user_id, two_factor_enabled=False, two_factor_secret=None
        )
        logger.info("2fa_disabled", user_id=user_id)

    async def remove_2fa(self, user_id: str, code: str) -> None:
        await self.disable_2fa(user_id, code)
