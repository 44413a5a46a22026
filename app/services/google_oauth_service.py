"""
Google OAuth token endpoint client.

Two grants are used: ``authorization_code`` by the connect-provider job and
``refresh_token`` by the credential provider when an access token is close to
expiry. Client configuration is read on each call so the module imports
without Google credentials.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
]

REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# The grant is gone for good; retrying the job cannot help
PERMANENT_OAUTH_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}


class GoogleOAuthError(Exception):
    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


class TokenResponse:
    """Token endpoint payload with ``expires_in`` resolved to an absolute time."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.scope = data.get("scope", "")
        expires_in = data.get("expires_in")
        self.expires_at = (
            datetime.now(UTC) + timedelta(seconds=int(expires_in)) if expires_in else None
        )

    def is_valid(self) -> bool:
        return bool(self.access_token and self.token_type)

    def has_calendar_access(self) -> bool:
        return "calendar" in self.scope


class GoogleOAuthService:
    def __init__(self, backoff_factor: float = BACKOFF_FACTOR):
        self.backoff_factor = backoff_factor

    def _client_credentials(self) -> dict[str, str]:
        if not settings.GOOGLE_CLIENT_ID:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured", recoverable=False)
        if not settings.GOOGLE_CLIENT_SECRET:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured", recoverable=False)
        return {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
        }

    async def _request_grant(self, grant: dict[str, str], operation: str) -> TokenResponse:
        """POST a grant to the token endpoint, retrying network errors and 429/5xx."""
        data = {**self._client_credentials(), **grant}

        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                last_attempt = attempt == MAX_RETRIES
                try:
                    response = await client.post(GOOGLE_TOKEN_URL, data=data)
                except httpx.RequestError as e:
                    if last_attempt:
                        raise GoogleOAuthError(f"Network error during {operation}: {e}") from e
                    logger.warning(
                        "Token endpoint unreachable, retrying",
                        operation=operation,
                        attempt=attempt,
                        error_type=type(e).__name__,
                    )
                else:
                    if response.status_code not in RETRY_STATUS_CODES or last_attempt:
                        return self._parse(response, operation)
                    logger.warning(
                        "Token endpoint transient status, retrying",
                        operation=operation,
                        status_code=response.status_code,
                        attempt=attempt,
                    )
                await asyncio.sleep(self.backoff_factor**attempt)

        raise GoogleOAuthError(f"{operation} failed: retries exhausted")

    def _parse(self, response: httpx.Response, operation: str) -> TokenResponse:
        if not response.is_success:
            try:
                body = response.json()
            except ValueError:
                raise GoogleOAuthError(
                    f"Google OAuth service error (HTTP {response.status_code})",
                    recoverable=response.status_code >= 500,
                ) from None

            error_code = body.get("error", "unknown_error")
            logger.error(
                "Token endpoint rejected grant",
                operation=operation,
                status_code=response.status_code,
                error_code=error_code,
                error_description=body.get("error_description"),
            )
            raise GoogleOAuthError(
                f"Google OAuth error: {error_code}",
                error_code=error_code,
                response_data=body,
                recoverable=error_code not in PERMANENT_OAUTH_ERRORS,
            )

        try:
            tokens = TokenResponse(response.json())
        except ValueError as e:
            raise GoogleOAuthError(f"Invalid token response format: {e}") from e
        if not tokens.is_valid():
            raise GoogleOAuthError("Token response missing access_token", recoverable=False)

        logger.info(
            "Token grant succeeded",
            operation=operation,
            has_refresh_token=bool(tokens.refresh_token),
            has_calendar_access=tokens.has_calendar_access(),
        )
        return tokens

    async def exchange_code_for_tokens(self, authorization_code: str) -> TokenResponse:
        """
        Trade a single-use authorization code for an access/refresh pair.

        Raises:
            GoogleOAuthError: configuration missing or the grant was rejected
        """
        logger.info("Exchanging authorization code", code_preview=authorization_code[:8] + "...")
        return await self._request_grant(
            {
                "code": authorization_code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.google_redirect_uri(),
            },
            operation="code_exchange",
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        tokens = await self._request_grant(
            {"refresh_token": refresh_token, "grant_type": "refresh_token"},
            operation="token_refresh",
        )
        # Google usually omits the refresh token on refresh
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens


google_oauth_service = GoogleOAuthService()


async def exchange_code_for_tokens(code: str) -> TokenResponse:
    return await google_oauth_service.exchange_code_for_tokens(code)


async def refresh_google_token(refresh_token: str) -> TokenResponse:
    return await google_oauth_service.refresh_access_token(refresh_token)
