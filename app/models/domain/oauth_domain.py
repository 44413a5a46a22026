# models/domain/oauth_domain.py
"""
OAuth Token Domain Model.
Decrypted provider credentials as handed to the calendar client.
"""

from datetime import UTC, datetime, timedelta
from typing import Literal

from pydantic import BaseModel


class OAuthToken(BaseModel):
    """Domain model for OAuth tokens (decrypted)."""

    user_id: str
    provider: Literal["google"] = "google"
    access_token: str  # decrypted
    refresh_token: str | None = None  # decrypted
    scope: str = ""
    expires_at: datetime | None = None
    updated_at: datetime | None = None

    def _expires_at_utc(self) -> datetime | None:
        if not self.expires_at:
            return None
        if self.expires_at.tzinfo is None:
            return self.expires_at.replace(tzinfo=UTC)
        return self.expires_at

    def is_expired(self) -> bool:
        """Check if access token is expired."""
        expires_at = self._expires_at_utc()
        if not expires_at:
            return False
        return datetime.now(UTC) >= expires_at

    def needs_refresh(self, buffer_minutes: int = 5) -> bool:
        """Check if token should be refreshed soon."""
        expires_at = self._expires_at_utc()
        if not expires_at:
            return False
        return datetime.now(UTC) + timedelta(minutes=buffer_minutes) >= expires_at

    def has_calendar_access(self) -> bool:
        """Check if token has Calendar API access."""
        calendar_indicators = ["calendar.readonly", "calendar.events", "calendar"]
        return any(indicator in self.scope for indicator in calendar_indicators)

    def can_refresh(self) -> bool:
        return bool(self.refresh_token)
