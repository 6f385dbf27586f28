"""
CraftCtrl - Error Taxonomy

Typed failures raised by the auth core. The HTTP layer maps each class
to its status code; services never build transport responses themselves.

All Unauthorized causes share one public message per flow so callers
cannot tell a missing account from a wrong password or a forged token
from an expired one.
"""

from typing import Optional


INVALID_CREDENTIALS = "Invalid credentials"
INVALID_TOKEN = "Invalid or expired token"


class CraftCtrlError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500
    default_message: str = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(CraftCtrlError):
    """Bad credentials, invalid token, missing/expired session, inactive user."""

    status_code = 401
    default_message = "Authentication required"


class InvalidInput(CraftCtrlError):
    """Malformed request or unusable one-time artifact (e.g. reset token)."""

    status_code = 400
    default_message = "Invalid request"


class Forbidden(CraftCtrlError):
    """Caller is authenticated but not allowed to perform the action."""

    status_code = 403
    default_message = "Insufficient permissions"


class NotFound(CraftCtrlError):
    status_code = 404
    default_message = "Not found"


class Conflict(CraftCtrlError):
    """Uniqueness violation (username, email, role name)."""

    status_code = 409
    default_message = "Resource already exists"


class InternalError(CraftCtrlError):
    """Store reported zero affected rows where one was expected."""

    status_code = 500
    default_message = "Server error"
