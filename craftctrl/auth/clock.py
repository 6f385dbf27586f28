"""
CraftCtrl - Time and Identifier Sources

Every expiry comparison and every random identifier in the auth core
goes through these objects so tests can pin time and predict IDs.

All datetimes are naive UTC, matching what the store persists.
"""

import calendar
import secrets
from datetime import datetime, timezone
from uuid import uuid4


class Clock:
    """Wall clock returning naive UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def timestamp(self) -> int:
        """Current time as integer seconds since the epoch (JWT iat/exp)."""
        return calendar.timegm(self.now().utctimetuple())


class IdGenerator:
    """Source of record IDs and opaque tokens."""

    def new_id(self) -> str:
        return str(uuid4())

    def new_token(self) -> str:
        """URL-safe random token with 256 bits of entropy."""
        return secrets.token_urlsafe(32)

    def new_token_id(self) -> str:
        """Short random ID for the jti claim."""
        return secrets.token_hex(16)
