"""
CraftCtrl - Password Hashing Utilities

Password hashing using bcrypt. The work factor comes from
settings.BCRYPT_ROUNDS (12 unless overridden).

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- Hashes below the configured work factor are upgraded on login
"""

from typing import Optional

import bcrypt

from craftctrl.config import settings


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plaintext password
        rounds: Work factor override (defaults to settings.BCRYPT_ROUNDS)

    Returns:
        bcrypt hash string (includes salt)

    Example:
        >>> hashed = hash_password("secret1")
        >>> hashed.startswith("$2b$")
        True
    """
    salt = bcrypt.gensalt(rounds=rounds or settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash in constant time.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except (ValueError, TypeError):
        return False


def needs_rehash(hashed_password: str, target_work_factor: Optional[int] = None) -> bool:
    """
    Check if a password hash was produced with a lower work factor.

    Args:
        hashed_password: Existing bcrypt hash
        target_work_factor: Desired work factor (defaults to settings.BCRYPT_ROUNDS)

    Returns:
        True if hash should be regenerated
    """
    target = target_work_factor or settings.BCRYPT_ROUNDS
    try:
        # $2b$XX$... where XX is the work factor
        _, cost, _ = hashed_password.split("$")[1:4]
        return int(cost) < target
    except (ValueError, IndexError):
        return True
